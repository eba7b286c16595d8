"""
Bot Service - FastAPI app receiving LINE webhooks.

Key points:
- POST /webhook verifies X-Line-Signature on the raw body, acks with 200 and
  processes the events in the background (one task per event)
- Replies go out through the LINE reply API with each event's reply token
- GET /metrics exposes Prometheus metrics from the service's own registry
- GET /healthz is readiness (store reachable and warm-up bootstrapped),
  GET /health is plain liveness
"""

import asyncio
import logging
import time
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request, Response
from pydantic import ValidationError

from common.config import Settings, get_settings

from . import tracing
from .container import Container
from .line import verify_signature
from .models import Event, HealthResponse, WebhookBody

logger = logging.getLogger("bot-service")

# LINE delivers at most this many events per webhook call
MAX_EVENTS_PER_WEBHOOK = 100


def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None, *, background: bool = True) -> FastAPI:
    """
    Build the app around one Container. Tests pass their own container and
    ``background=False`` to skip the warm-up and periodic loops.
    """
    settings = settings or get_settings()
    container = container or Container(settings)
    app = FastAPI(title="Campus Bot Service")
    app.state.container = container

    @app.on_event("startup")
    async def startup_event():
        tracing.install_log_filter()
        await container.start(background=background)
        if not background:
            container.readiness.mark_ready()
        logger.info("Bot service started (llm=%s)", "on" if container.nlu.is_enabled() else "off")

    @app.on_event("shutdown")
    async def shutdown_event():
        await container.stop()
        logger.info("Bot service stopped")

    async def handle_event(event: Event) -> None:
        started = time.monotonic()
        try:
            replies = await container.processor.process_event(event)
        except Exception:
            logger.exception("Failed to handle %s event", event.type)
            container.metrics.record_webhook(event.type, "error")
            return
        container.metrics.record_webhook(event.type, "ok")
        if replies and event.reply_token:
            sent = await container.line.reply(event.reply_token, replies)
            if not sent:
                container.metrics.record_webhook(event.type, "reply_error")
        logger.debug("Handled %s event in %.3fs", event.type, time.monotonic() - started)

    async def handle_events(body: WebhookBody) -> None:
        events = body.events[:MAX_EVENTS_PER_WEBHOOK]
        if len(body.events) > MAX_EVENTS_PER_WEBHOOK:
            logger.warning("Too many events in one webhook (%d); truncating", len(body.events))
        await asyncio.gather(*(handle_event(e) for e in events))

    @app.post("/webhook")
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        raw = await request.body()
        signature = request.headers.get("x-line-signature", "")
        if not verify_signature(settings.line_channel_secret, raw, signature):
            logger.warning("Invalid webhook signature")
            container.metrics.record_webhook("batch", "bad_signature")
            raise HTTPException(status_code=401, detail="Invalid signature")
        try:
            body = WebhookBody.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Unparsable webhook body: %d error(s)", e.error_count())
            container.metrics.record_webhook("batch", "bad_request")
            raise HTTPException(status_code=400, detail="Invalid webhook body")

        background_tasks.add_task(handle_events, body)
        return Response(status_code=200)

    @app.get("/metrics")
    def metrics():
        return Response(content=container.metrics.render(), media_type=container.metrics.content_type)

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz(response: Response):
        store_ok = await container.store.ping()
        ready = container.readiness.ready
        status = "ok" if store_ok and ready else ("down" if not store_ok else "starting")
        if status != "ok":
            response.status_code = 503
        return HealthResponse(status=status, store=store_ok, warmupDone=container.readiness.warmup_done)

    @app.get("/health")
    def health():
        """
        Lightweight liveness endpoint.
        Cheap (no external calls) so Docker health checks are reliable.
        """
        return {"status": "ok", "service": settings.service_name}

    return app
