import pytest

from settings import Settings


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        emdex_api_url="https://emdex.test",
        emdex_email="pharmacist@scanrx.test",
        emdex_password="s3cret",
        use_mock_emdex=False,
    )
