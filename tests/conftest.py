"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from sentinel.config import Settings, get_settings


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit real LLM providers (requires .env with valid credentials)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local keys never leak into unit tests.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings backed by an in-memory store and no LLM key.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "database_path": ":memory:",
            "llm_provider": "openai",
            "openai_api_key": "",
            "openai_model": "gpt-4o-mini",
            "openai_base_url": "",
            "anthropic_api_key": "",
            "anthropic_model": "claude-3-5-haiku-latest",
            "webhook_secret": "whsec-test",
            # Admission control
            "rate_limit_window_seconds": 900,
            "rate_limit_max_requests": 100,
            "rate_limit_sweep_seconds": 300,
            # Detection (scheduled sweep disabled in tests)
            "detection_schedule_cron": "",
            "metrics_aggregation_cron": "",
            "latency_threshold_ms": 5000,
            "error_rate_threshold": 10.0,
            "risk_score_threshold": 80,
            "consecutive_high_risk_count": 3,
            "cost_spike_percentage": 50.0,
            # Root cause synthesis
            "rca_request_limit": 20,
            "rca_timeout_seconds": 5.0,
            "rca_max_concurrent": 2,
            "log_level": "INFO",
        },
    )()
    with (
        patch("sentinel.config.get_settings", return_value=fake_settings),
        patch("sentinel.storage.store.get_settings", return_value=fake_settings),
        patch("sentinel.detection.models.get_settings", return_value=fake_settings),
        patch("sentinel.scheduler.get_settings", return_value=fake_settings),
        patch("sentinel.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings
