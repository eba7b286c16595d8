import asyncio
from datetime import datetime

import httpx
import pytest
import pytest_asyncio

from common.config import Settings
from campusbot.handlers import Deps
from campusbot.handlers.base import TAIPEI
from campusbot.metrics import Metrics
from campusbot.scraper import ScraperClient
from campusbot.sticker import StickerManager
from campusbot.store import Store

# 2025-03-10 in Taipei: ROC year 114, semester 113-2 in progress
FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=TAIPEI)

EMPTY_PAGE = "<html><body><p>no data</p></body></html>"


class FakeClock:
    """Manually advanced clock usable wherever a time.monotonic-like callable is accepted."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def fixed_now() -> datetime:
    return FIXED_NOW


def make_scraper(handler, **kwargs) -> ScraperClient:
    """ScraperClient over an httpx.MockTransport, with admission and backoff effectively disabled."""
    options = dict(rate=1000.0, burst=100, max_retries=0, retry_initial=0.01, sleep=no_sleep)
    options.update(kwargs)
    return ScraperClient(transport=httpx.MockTransport(handler), **options)


def empty_upstream(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, text=EMPTY_PAGE, headers={"content-type": "text/html; charset=utf-8"})


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_path=str(tmp_path / "cache.db"),
        line_channel_secret="test-secret",
        line_channel_access_token="test-token",
        warmup_modules=(),
    )


@pytest.fixture
def metrics():
    return Metrics()


@pytest.fixture
def stickers():
    return StickerManager(urls=["https://example.test/sticker.png"])


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path):
    s = Store(str(tmp_path / "store.db"), ttl=3600, historical_ttl=600)
    await s.init()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def scraper():
    """Upstream that answers every request with an empty page."""
    client = make_scraper(empty_upstream)
    yield client
    await client.close()


@pytest.fixture
def deps(store, scraper, metrics, stickers, settings):
    return Deps(store=store, scraper=scraper, metrics=metrics, stickers=stickers, settings=settings, now=fixed_now)
