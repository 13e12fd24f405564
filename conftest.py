"""
Shared fixtures for the defense layer tests
"""

import os
import sys

import pytest
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()
os.environ.setdefault("APP_ENV", "test")

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from newsdesk.core.config import settings  # noqa: E402
from newsdesk.monitoring.alerting.alert_manager import default_rules  # noqa: E402
from newsdesk.security.csrf import CSRFConfig  # noqa: E402
from newsdesk.security.monitoring.security_monitor import SecurityMonitor  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock so window tests never sleep."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self) -> None:
        self.alerts = []

    def notify(self, alert) -> None:
        self.alerts.append(alert)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def monitor(clock, notifier) -> SecurityMonitor:
    return SecurityMonitor(default_rules(settings), notifier, clock=clock)


@pytest.fixture
def csrf_config() -> CSRFConfig:
    return CSRFConfig(secret="test-csrf-secret", max_age_ms=60 * 60 * 1000, max_sessions=3)
