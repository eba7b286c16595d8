"""
Tracing context for one inbound event.

The values (chat id, user id, reply-quoting token) live in ``contextvars`` so
every coroutine spawned while handling an event sees them, and a logging
filter stamps them onto log records.

``preserve_tracing()`` builds a brand-new ``contextvars.Context`` holding only
the tracing values. Work started in that context does not inherit the parent
deadline; callers must give it its own bound (see ``run_detached``).
"""

import asyncio
import contextvars
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")

_chat_id: contextvars.ContextVar[str] = contextvars.ContextVar("chat_id", default="")
_user_id: contextvars.ContextVar[str] = contextvars.ContextVar("user_id", default="")
_quote_token: contextvars.ContextVar[str] = contextvars.ContextVar("quote_token", default="")


@dataclass(frozen=True)
class Trace:
    chat_id: str = ""
    user_id: str = ""
    quote_token: str = ""


def inject(chat_id: str = "", user_id: str = "", quote_token: str = "") -> None:
    """Set the tracing values for the current task."""
    _chat_id.set(chat_id)
    _user_id.set(user_id)
    _quote_token.set(quote_token)


def current() -> Trace:
    return Trace(_chat_id.get(), _user_id.get(), _quote_token.get())


def preserve_tracing(trace: Optional[Trace] = None) -> contextvars.Context:
    """
    Return a fresh Context that carries only the tracing values of ``trace``
    (defaults to the current ones). Nothing else from the caller leaks in.
    """
    trace = trace or current()
    ctx = contextvars.Context()
    ctx.run(inject, trace.chat_id, trace.user_id, trace.quote_token)
    return ctx


async def run_detached(
    fn: Callable[..., Awaitable[T]],
    *args,
    timeout: float,
) -> T:
    """
    Run ``fn(*args)`` in a detached task that keeps the tracing values but not
    the caller's deadline. The task is bounded by its own ``timeout``; if the
    caller is cancelled the detached work still runs to that bound.
    """
    async def _bounded() -> T:
        async with asyncio.timeout(timeout):
            return await fn(*args)

    loop = asyncio.get_running_loop()
    task = loop.create_task(_bounded(), context=preserve_tracing())
    return await asyncio.shield(task)


class TraceFilter(logging.Filter):
    """Adds ``record.trace`` (e.g. " chat=U123 user=U456") for the log format."""

    def filter(self, record: logging.LogRecord) -> bool:
        chat_id = _chat_id.get()
        user_id = _user_id.get()
        parts = []
        if chat_id:
            parts.append(f"chat={chat_id}")
        if user_id and user_id != chat_id:
            parts.append(f"user={user_id}")
        record.trace = (" " + " ".join(parts)) if parts else ""
        return True


def install_log_filter() -> None:
    """Attach TraceFilter to every root handler (idempotent)."""
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, TraceFilter) for f in handler.filters):
            handler.addFilter(TraceFilter())
