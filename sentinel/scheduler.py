"""APScheduler integration for the periodic sweeps.

Three jobs run on an AsyncIOScheduler:

* the detection sweep, on ``DETECTION_SCHEDULE_CRON`` (empty disables it),
  evaluates every project and opens at most one incident per project;
* the metrics aggregation, on ``METRICS_AGGREGATION_CRON`` (empty disables
  it), caches yesterday's usage summary per project;
* the limiter sweep, every ``RATE_LIMIT_SWEEP_SECONDS``, drops expired
  admission windows.
"""

import contextlib
import logging
import sqlite3
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from sentinel.admission.limiter import AdmissionController
from sentinel.analytics.usage import run_metrics_aggregation
from sentinel.config import get_settings
from sentinel.detection.engine import run_all_detections
from sentinel.detection.models import DetectionConfig, DetectionResult
from sentinel.detection.statistical import STATISTICAL_DETECTORS
from sentinel.incidents.lifecycle import create_incident_from_detection
from sentinel.observability.metrics import SWEEP_DURATION, SWEEPS_TOTAL
from sentinel.storage.store import list_project_ids

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def detect_project(
    conn: sqlite3.Connection,
    project_id: str,
    config: DetectionConfig,
) -> DetectionResult | None:
    """Threshold heuristics first, then the 3-sigma detectors; first trigger wins."""
    result = await run_all_detections(conn, project_id, config)
    if result is None:
        result = await run_all_detections(conn, project_id, config, detectors=STATISTICAL_DETECTORS)
    return result


async def run_detection_sweep(
    conn: sqlite3.Connection,
    config: DetectionConfig | None = None,
) -> dict[str, str]:
    """Evaluate every project; returns ``{project_id: incident_id}`` for opened incidents.

    A failure on one project is logged and does not stop the sweep.
    """
    config = config or DetectionConfig.from_settings()
    opened: dict[str, str] = {}
    project_ids = list_project_ids(conn)
    logger.info("Starting detection sweep over %d projects", len(project_ids))

    for project_id in project_ids:
        try:
            result = await detect_project(conn, project_id, config)
            if result is None:
                continue
            incident = create_incident_from_detection(conn, project_id, result)
            opened[project_id] = incident["id"]
        except Exception:
            logger.exception("Detection sweep failed for project %s", project_id)

    logger.info("Detection sweep finished: %d incidents opened", len(opened))
    return opened


async def _detection_job(conn: sqlite3.Connection) -> None:
    start = time.monotonic()
    try:
        await run_detection_sweep(conn)
        SWEEPS_TOTAL.labels(job="detection", status="success").inc()
    except Exception:
        SWEEPS_TOTAL.labels(job="detection", status="error").inc()
        logger.exception("Scheduled detection sweep failed")
    finally:
        SWEEP_DURATION.labels(job="detection").observe(time.monotonic() - start)


def _limiter_job(admission: AdmissionController) -> None:
    start = time.monotonic()
    try:
        admission.sweep()
        SWEEPS_TOTAL.labels(job="limiter", status="success").inc()
    except Exception:
        SWEEPS_TOTAL.labels(job="limiter", status="error").inc()
        logger.exception("Rate limiter sweep failed")
    finally:
        SWEEP_DURATION.labels(job="limiter").observe(time.monotonic() - start)


def _metrics_job(conn: sqlite3.Connection) -> None:
    start = time.monotonic()
    try:
        run_metrics_aggregation(conn)
        SWEEPS_TOTAL.labels(job="metrics", status="success").inc()
    except Exception:
        SWEEPS_TOTAL.labels(job="metrics", status="error").inc()
        logger.exception("Scheduled metrics aggregation failed")
    finally:
        SWEEP_DURATION.labels(job="metrics").observe(time.monotonic() - start)


def start_scheduler(conn: sqlite3.Connection, admission: AdmissionController) -> None:
    """Start the scheduler with the limiter sweep and whichever cron jobs are configured."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _limiter_job,
        trigger=IntervalTrigger(seconds=settings.rate_limit_sweep_seconds),
        args=[admission],
        id="limiter_sweep",
        name="Rate Limiter Sweep",
        replace_existing=True,
    )

    if settings.detection_schedule_cron:
        _scheduler.add_job(
            _detection_job,
            trigger=CronTrigger.from_crontab(settings.detection_schedule_cron),
            args=[conn],
            id="detection_sweep",
            name="Incident Detection Sweep",
            replace_existing=True,
        )
        logger.info("Detection sweep scheduled with cron: %s", settings.detection_schedule_cron)
    else:
        logger.info("Detection sweep disabled (DETECTION_SCHEDULE_CRON not set)")

    if settings.metrics_aggregation_cron:
        _scheduler.add_job(
            _metrics_job,
            trigger=CronTrigger.from_crontab(settings.metrics_aggregation_cron),
            args=[conn],
            id="metrics_aggregation",
            name="Daily Metrics Aggregation",
            replace_existing=True,
        )
        logger.info("Metrics aggregation scheduled with cron: %s", settings.metrics_aggregation_cron)
    else:
        logger.info("Metrics aggregation disabled (METRICS_AGGREGATION_CRON not set)")

    _scheduler.start()
    logger.info("Scheduler started")


def stop_scheduler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
        _scheduler = None
