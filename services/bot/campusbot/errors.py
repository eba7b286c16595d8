"""
Error taxonomy shared by the scraper, handlers, NLU adapter and processor.

Errors are classified where they originate and propagate unchanged; the
processor decides what the user sees. Every class carries a short ``kind``
label which is also the metrics label used by ``errors_total``.
"""

from typing import Optional


class BotError(Exception):
    kind = "internal"


# --- Input / admission -------------------------------------------------------
class InputError(BotError):
    """Empty, over-long or malformed user input."""
    kind = "input"


class RateLimited(BotError):
    kind = "rate_limited"

    def __init__(self, limiter: str, reason: str = "burst") -> None:
        super().__init__(f"{limiter} limiter denied request ({reason})")
        self.limiter = limiter
        self.reason = reason


class PostbackError(BotError):
    """A postback payload could not be encoded or decoded."""
    kind = "postback"


# --- Scraper -----------------------------------------------------------------
class ScraperError(BotError):
    kind = "upstream"


class Canceled(ScraperError):
    """The scraper client was shut down while the request was pending."""
    kind = "canceled"


class Timeout(ScraperError):
    kind = "timeout"


class UpstreamHTTPError(ScraperError):
    kind = "upstream_http"

    def __init__(self, status: int, url: str = "", retry_after: Optional[float] = None) -> None:
        super().__init__(f"upstream returned HTTP {status} for {url}" if url else f"upstream returned HTTP {status}")
        self.status = status
        self.url = url
        self.retry_after = retry_after

    @property
    def retriable(self) -> bool:
        return self.status == 429 or self.status >= 500


class TransportError(ScraperError):
    kind = "transport"


class AllMirrorsFailed(ScraperError):
    kind = "all_mirrors_failed"

    def __init__(self, endpoint: str, last_error: Optional[BaseException] = None) -> None:
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"all mirrors for '{endpoint}' failed{detail}")
        self.endpoint = endpoint
        self.last_error = last_error


# --- NLU / dispatch ----------------------------------------------------------
class NLUError(BotError):
    kind = "nlu"


class NLUUnavailable(NLUError):
    kind = "nlu_unavailable"


class NLUInvalidResponse(NLUError):
    kind = "nlu_invalid_response"


class UnknownModule(NLUError):
    kind = "unknown_module"

    def __init__(self, module: str) -> None:
        super().__init__(f"unknown module: {module}")
        self.module = module


class DispatchError(BotError):
    kind = "dispatch"


class UnknownIntent(DispatchError):
    kind = "unknown_intent"

    def __init__(self, module: str, intent: str) -> None:
        super().__init__(f"unknown intent {intent!r} for module {module!r}")
        self.module = module
        self.intent = intent


class MissingParameter(DispatchError):
    kind = "missing_parameter"

    def __init__(self, name: str) -> None:
        super().__init__(f"missing parameter: {name}")
        self.name = name


def is_upstream_failure(exc: BaseException) -> bool:
    """True for failures that mean "the data source is unavailable right now"."""
    if isinstance(exc, UpstreamHTTPError):
        return exc.retriable
    return isinstance(exc, (AllMirrorsFailed, TransportError, Timeout, Canceled))
