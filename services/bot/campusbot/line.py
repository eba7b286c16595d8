"""
LINE platform transport: webhook signature check and the reply API client.
Nothing else in the service knows the platform's HTTP surface.
"""

import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, List

import httpx

logger = logging.getLogger("line")

REPLY_PATH = "/v2/bot/message/reply"


def compute_signature(channel_secret: str, body: bytes) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(channel_secret: str, body: bytes, signature: str) -> bool:
    """Constant-time comparison of ``X-Line-Signature`` against the raw body."""
    if not channel_secret or not signature:
        return False
    return hmac.compare_digest(compute_signature(channel_secret, body), signature.strip())


class LineClient:
    """Posts reply messages with a reply token. Failures are logged, not raised."""

    def __init__(self, access_token: str, client: httpx.AsyncClient, base_url: str = "https://api.line.me") -> None:
        self._token = access_token
        self._client = client
        self._base_url = base_url.rstrip("/")

    async def reply(self, reply_token: str, messages: List[Dict[str, Any]]) -> bool:
        if not reply_token or not messages:
            return False
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        payload = {"replyToken": reply_token, "messages": messages}
        try:
            response = await self._client.post(f"{self._base_url}{REPLY_PATH}", headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Reply API request failed: %s", e)
            return False
        if response.status_code >= 400:
            logger.error("Reply API error %s: %s", response.status_code, response.text[:300])
            return False
        return True
