"""
Polite HTTP client shared by every site adapter.

All upstream policy lives here:
- admission through a global token bucket (bounded wait, then Timeout)
- bounded parallelism (semaphore)
- a random desktop User-Agent per request
- failover across the mirror hosts of a named endpoint
- retries with exponential backoff and jitter under a hard time budget
- coalescing of identical concurrent requests (SingleFlight)
- Big5 handling for the legacy course system

Adapters only build paths and parse HTML.
"""

import asyncio
import logging
import random
import time
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
from bs4 import BeautifulSoup

from ..errors import AllMirrorsFailed, Canceled, ScraperError, Timeout, TransportError, UpstreamHTTPError
from ..ratelimit import TokenBucket
from .singleflight import SingleFlight

logger = logging.getLogger("scraper")

# Logical endpoint -> ordered mirror hosts
ENDPOINTS: Dict[str, List[str]] = {
    "sea": ["https://sea.cc.ntpu.edu.tw", "http://sea.cc.ntpu.edu.tw"],
    "lms": ["https://lms.ntpu.edu.tw", "http://lms.ntpu.edu.tw"],
}

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:128.0) Gecko/20100101 Firefox/128.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.5 Safari/605.1.15",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36 Edg/126.0.0.0",
]

BIG5 = "cp950"

Params = Optional[Mapping[str, str]]


def _decode(resp: httpx.Response) -> str:
    """Body as text; the legacy pages declare big5 and need the cp950 superset."""
    content_type = resp.headers.get("content-type", "").lower()
    if "big5" in content_type or "950" in content_type:
        return resp.content.decode(BIG5, errors="replace")
    return resp.text


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def _normalize(params: Params) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((str(k), str(v)) for k, v in (params or {}).items()))


class ScraperClient:
    def __init__(
        self,
        *,
        endpoints: Optional[Dict[str, Sequence[str]]] = None,
        workers: int = 5,
        timeout: float = 60.0,
        rate: float = 0.5,
        burst: int = 5,
        wait_timeout: float = 30.0,
        max_retries: int = 3,
        retry_initial: float = 1.0,
        retry_budget: float = 120.0,
        metrics=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoints = {k: list(v) for k, v in (endpoints or ENDPOINTS).items()}
        self.timeout = timeout
        self.wait_timeout = wait_timeout
        self.max_retries = max_retries
        self.retry_initial = retry_initial
        self.retry_budget = retry_budget
        self._metrics = metrics
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock
        self._bucket = TokenBucket(burst, rate, clock)
        self._workers = asyncio.Semaphore(workers)
        self._working: Dict[str, str] = {}
        self._flight = SingleFlight()
        self._closed = False
        self._http = httpx.AsyncClient(transport=transport, follow_redirects=True, timeout=timeout)

    @classmethod
    def from_settings(cls, settings, metrics=None, **kwargs) -> "ScraperClient":
        return cls(
            workers=settings.scraper_workers,
            timeout=settings.scraper_timeout,
            rate=settings.scraper_rate,
            burst=settings.scraper_burst,
            wait_timeout=settings.scraper_wait_timeout,
            max_retries=settings.scraper_max_retries,
            retry_initial=settings.scraper_retry_initial,
            retry_budget=settings.scraper_retry_budget,
            metrics=metrics,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def get_text(self, endpoint: str, path: str, params: Params = None, *, encoding: str = "utf-8") -> str:
        """GET ``path`` on ``endpoint`` with ``params`` encoded in ``encoding``."""
        query = urlencode(list((params or {}).items()), encoding=encoding) if params else ""
        key = ("GET", endpoint, path, _normalize(params))
        return await self._coalesced(key, "GET", endpoint, path, query, None)

    async def get_document(self, endpoint: str, path: str, params: Params = None, *, encoding: str = "utf-8") -> BeautifulSoup:
        html = await self.get_text(endpoint, path, params, encoding=encoding)
        return BeautifulSoup(html, "html.parser")

    async def post_form(self, endpoint: str, path: str, data: Mapping[str, str], *, encoding: str = BIG5) -> BeautifulSoup:
        """
        POST an urlencoded form. The course system expects Big5 form values;
        the request only reads data, so it is retried like a GET.
        """
        body = urlencode(list(data.items()), encoding=encoding).encode("ascii")
        key = ("POST", endpoint, path, _normalize(data))
        html = await self._coalesced(key, "POST", endpoint, path, "", body)
        return BeautifulSoup(html, "html.parser")

    async def close(self) -> None:
        self._closed = True
        self._flight.cancel_all()
        await self._http.aclose()

    def in_flight(self) -> int:
        return self._flight.in_flight()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    async def _coalesced(self, key, method: str, endpoint: str, path: str, query: str, body: Optional[bytes]) -> str:
        if self._closed:
            raise Canceled("scraper client is closed")
        try:
            return await self._flight.do(key, lambda: self._fetch(method, endpoint, path, query, body))
        except asyncio.CancelledError:
            if self._closed:
                raise Canceled("scraper client closed during request") from None
            raise

    def _hosts(self, endpoint: str) -> List[str]:
        try:
            hosts = list(self.endpoints[endpoint])
        except KeyError:
            raise ValueError(f"unknown endpoint: {endpoint}") from None
        working = self._working.get(endpoint)
        if working in hosts:
            hosts.remove(working)
            hosts.insert(0, working)
        return hosts

    def _headers(self, form: bool) -> Dict[str, str]:
        headers = {
            "User-Agent": self._rng.choice(USER_AGENTS),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "zh-TW,zh;q=0.9,en-US;q=0.8,en;q=0.7",
        }
        if form:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        return headers

    def backoff(self, attempt: int) -> float:
        """initial * 2^attempt with +/-25% jitter."""
        delay = self.retry_initial * (2 ** attempt)
        return delay - delay / 4 + self._rng.uniform(0, delay / 2)

    def _record(self, endpoint: str, result: str, started: float) -> None:
        if self._metrics is not None:
            self._metrics.record_scraper(endpoint, result, self._clock() - started)

    async def _admit(self, remaining: float) -> None:
        """Take a request token, waiting no longer than the retry budget allows."""
        limit = min(self.wait_timeout, remaining)
        if not await self._bucket.wait(limit):
            raise Timeout(f"no upstream request token within {limit:.1f}s")

    async def _fetch(self, method: str, endpoint: str, path: str, query: str, body: Optional[bytes]) -> str:
        hosts = self._hosts(endpoint)
        deadline = self._clock() + self.retry_budget
        last_error: Optional[ScraperError] = None

        for attempt in range(self.max_retries + 1):
            retry_after: Optional[float] = None
            for host in hosts:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    break
                # token and worker waits count against the budget too
                await self._admit(remaining)
                try:
                    text = await self._send(method, endpoint, host, path, query, body, deadline)
                except UpstreamHTTPError as e:
                    if not e.retriable:
                        raise
                    last_error = e
                    if e.status == 429:
                        retry_after = e.retry_after
                        break
                    logger.warning("%s %s%s failed with HTTP %d; trying next host", method, host, path, e.status)
                except (TransportError, Timeout) as e:
                    last_error = e
                    logger.warning("%s %s%s failed: %s; trying next host", method, host, path, e)
                else:
                    self._working[endpoint] = host
                    return text

            if attempt >= self.max_retries:
                break
            delay = retry_after if retry_after is not None else self.backoff(attempt)
            remaining = deadline - self._clock()
            if delay >= remaining:
                logger.warning("Retry budget for %s exhausted after %d attempt(s)", endpoint, attempt + 1)
                break
            logger.info("Retrying %s %s in %.1fs (attempt %d/%d)", method, path, delay, attempt + 1, self.max_retries)
            await self._sleep(delay)

        if last_error is None:
            last_error = Timeout(f"retry budget of {self.retry_budget}s exhausted")
        if len(hosts) > 1:
            raise AllMirrorsFailed(endpoint, last_error)
        raise last_error

    async def _send(
        self, method: str, endpoint: str, host: str, path: str, query: str, body: Optional[bytes], deadline: float
    ) -> str:
        url = host + path
        if query:
            url += ("&" if "?" in path else "?") + query
        try:
            await asyncio.wait_for(self._workers.acquire(), max(deadline - self._clock(), 0))
        except TimeoutError:
            raise Timeout(f"no scraper worker free for {method} {url} within the retry budget") from None
        started = self._clock()
        try:
            resp = await self._http.request(
                method, url, content=body, headers=self._headers(body is not None),
                timeout=min(self.timeout, max(deadline - started, 0.001)),
            )
        except httpx.TimeoutException as e:
            self._record(endpoint, "timeout", started)
            raise Timeout(f"{method} {url} timed out") from e
        except httpx.HTTPError as e:
            self._record(endpoint, "transport", started)
            raise TransportError(f"{method} {url}: {e}") from e
        finally:
            self._workers.release()

        if resp.status_code >= 400:
            self._record(endpoint, f"http_{resp.status_code // 100}xx", started)
            raise UpstreamHTTPError(resp.status_code, url, retry_after=_retry_after(resp))
        self._record(endpoint, "ok", started)
        return _decode(resp)
