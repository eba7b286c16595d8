"""
End-to-end checks of the FastAPI app: signature verification, background
event handling with the reply captured from the LINE API, and the
operational endpoints.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from campusbot.container import Container
from campusbot.line import compute_signature
from campusbot.main import create_app

from conftest import empty_upstream, make_scraper


@pytest.fixture
def line_api():
    sent = []

    def handler(request: httpx.Request) -> httpx.Response:
        sent.append({
            "url": str(request.url),
            "auth": request.headers["Authorization"],
            "body": json.loads(request.content),
        })
        return httpx.Response(200, json={})

    return sent, handler


@pytest.fixture
def client(settings, metrics, stickers, line_api):
    _, handler = line_api
    container = Container(
        settings,
        metrics=metrics,
        scraper=make_scraper(empty_upstream),
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        stickers=stickers,
    )
    app = create_app(settings, container, background=False)
    with TestClient(app) as c:
        yield c


def signed(settings, payload):
    raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    return raw, {
        "X-Line-Signature": compute_signature(settings.line_channel_secret, raw),
        "Content-Type": "application/json",
    }


def text_payload(text, reply_token="reply-1"):
    return {
        "destination": "Ubot",
        "events": [{
            "type": "message",
            "mode": "active",
            "timestamp": 1700000000000,
            "replyToken": reply_token,
            "webhookEventId": "evt-1",
            "source": {"type": "user", "userId": "U1"},
            "message": {"type": "text", "id": "m1", "text": text, "quoteToken": "q-1"},
        }],
    }


def test_health(settings):
    app = create_app(settings)
    client = TestClient(app)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    print("[TEST] /health passed ✅")


def test_webhook_rejects_bad_signature(client):
    resp = client.post("/webhook", content=b'{"events": []}', headers={"X-Line-Signature": "bm9wZQ=="})
    assert resp.status_code == 401

    resp = client.post("/webhook", content=b'{"events": []}')
    assert resp.status_code == 401


def test_webhook_rejects_unparsable_body(client, settings):
    raw = b"not json"
    headers = {"X-Line-Signature": compute_signature(settings.line_channel_secret, raw)}
    assert client.post("/webhook", content=raw, headers=headers).status_code == 400


def test_webhook_replies_through_line_api(client, settings, line_api):
    sent, _ = line_api
    raw, headers = signed(settings, text_payload("緊急"))
    resp = client.post("/webhook", content=raw, headers=headers)
    assert resp.status_code == 200

    assert len(sent) == 1
    reply = sent[0]
    assert reply["url"] == "https://api.line.me/v2/bot/message/reply"
    assert reply["auth"] == "Bearer test-token"
    assert reply["body"]["replyToken"] == "reply-1"
    assert reply["body"]["messages"][0]["altText"] == "緊急聯絡電話"


def test_webhook_without_events_sends_nothing(client, settings, line_api):
    sent, _ = line_api
    raw, headers = signed(settings, {"destination": "Ubot", "events": []})
    assert client.post("/webhook", content=raw, headers=headers).status_code == 200
    assert sent == []


def test_healthz_after_bootstrap(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "store": True, "warmupDone": True}


def test_metrics_endpoint(client, settings):
    raw, headers = signed(settings, text_payload("使用說明"))
    client.post("/webhook", content=raw, headers=headers)

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'campusbot_webhook_events_total{type="message",outcome="ok"} 1.0' in resp.text
