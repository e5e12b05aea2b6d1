import pytest

from signature_sdk.config import Settings

BASE = "https://api.test"


class SleepRecorder:
    """Stands in for asyncio.sleep so backoff can be asserted without waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("BASE_URL", "ACCESS_TOKEN", "API_KEY", "REFRESH_TOKEN", "ENABLE_ETAG_CACHE", "DEBUG"):
        monkeypatch.delenv(f"SIGNATURE_{name}", raising=False)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def settings() -> Settings:
    return Settings(base_url=BASE, access_token="tok")


@pytest.fixture
def cached_settings() -> Settings:
    return Settings(base_url=BASE, access_token="tok", enable_etag_cache=True)


@pytest.fixture
def refresh_settings() -> Settings:
    return Settings(base_url=BASE, access_token="old", refresh_token="r1")
