"""Run one detection sweep against the configured store and print the outcome.

Usage:
    python -m scripts.run_detection
    python -m scripts.run_detection --project proj_123 --dry-run
"""

import argparse
import asyncio
import json
import logging
import sys

from sentinel.config import get_settings
from sentinel.detection.models import DetectionConfig
from sentinel.incidents.lifecycle import create_incident_from_detection
from sentinel.scheduler import detect_project, run_detection_sweep
from sentinel.storage.store import get_initialized_connection

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the incident detection sweep once.")
    parser.add_argument("--project", help="Only evaluate this project")
    parser.add_argument("--dry-run", action="store_true", help="Report detections without opening incidents")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    """Evaluate one or all projects and print a JSON summary."""
    args = _parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    conn = get_initialized_connection(get_settings().database_path)
    config = DetectionConfig.from_settings()
    try:
        if args.project:
            result = await detect_project(conn, args.project, config)
            summary: dict[str, object] = {"project": args.project, "triggered": result is not None}
            if result is not None:
                summary["detection"] = result.model_dump()
                if not args.dry_run:
                    summary["incidentId"] = create_incident_from_detection(conn, args.project, result)["id"]
        elif args.dry_run:
            print("--dry-run requires --project", file=sys.stderr)
            sys.exit(2)
        else:
            summary = {"incidents": await run_detection_sweep(conn, config)}
        print(json.dumps(summary, indent=2, default=str))
    except Exception as e:
        print(f"Detection sweep failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    asyncio.run(main())
