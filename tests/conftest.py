import pytest
import datetime as dt

from courier.utils.metrics import metrics


class FakeClock:
    """Manually driven clock for expiry and timestamp tests."""

    def __init__(self, start: dt.datetime | None = None):
        self.now = start or dt.datetime(2025, 1, 1, 12, 0, tzinfo=dt.UTC)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += dt.timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """Returns a fake clock frozen at 2025-01-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_metrics():
    """Every test starts from empty metric values."""
    metrics.reset()
    yield
