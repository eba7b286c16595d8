import json

import httpx
import pytest

from campusbot.line import LineClient, compute_signature, verify_signature

BODY = b'{"destination":"Ubot","events":[]}'


def test_signature_round_trip():
    signature = compute_signature("secret", BODY)
    assert verify_signature("secret", BODY, signature)
    assert verify_signature("secret", BODY, f" {signature} ")
    assert not verify_signature("other", BODY, signature)
    assert not verify_signature("secret", BODY + b" ", signature)
    assert not verify_signature("", BODY, signature)
    assert not verify_signature("secret", BODY, "")


@pytest.mark.asyncio
async def test_reply_posts_messages_with_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        line = LineClient("token-1", http, "https://line.test/")
        assert await line.reply("r-1", [{"type": "text", "text": "hi"}])
        assert not await line.reply("", [{"type": "text", "text": "hi"}])
        assert not await line.reply("r-1", [])

    assert len(seen) == 1
    assert str(seen[0].url) == "https://line.test/v2/bot/message/reply"
    assert seen[0].headers["Authorization"] == "Bearer token-1"
    assert json.loads(seen[0].content) == {"replyToken": "r-1", "messages": [{"type": "text", "text": "hi"}]}


@pytest.mark.asyncio
async def test_reply_failures_are_reported_not_raised():
    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "Invalid reply token"})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    for handler in (rejected, unreachable):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            assert not await LineClient("token-1", http).reply("r-1", [{"type": "text", "text": "hi"}])
