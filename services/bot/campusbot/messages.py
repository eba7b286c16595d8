"""
Reply message builders (LINE Messaging API JSON shapes) and the reply
envelope rules: at most five messages per reply, at most ten bubbles per
carousel, bounded text length, and a quote token only on quotable types.

Messages are plain dicts so they can be posted as-is by the reply client.
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from common.config import LINE_MAX_MESSAGES_PER_REPLY

from . import postback as pb_codec
from .postback import Postback
from .text import truncate

Message = Dict[str, Any]

MAX_TEXT_LENGTH = 5000
MAX_CAROUSEL_BUBBLES = 10
MAX_QUICK_REPLY_ITEMS = 13
MAX_LABEL_LENGTH = 20
MAX_ALT_TEXT_LENGTH = 400
QUOTABLE_TYPES = frozenset({"text", "textV2", "sticker"})


# -----------------------------------------------------------------------------
# Basic messages
# -----------------------------------------------------------------------------
def sender(name: str, icon_url: str = "") -> Dict[str, str]:
    out = {"name": truncate(name, 20)}
    if icon_url:
        out["iconUrl"] = icon_url
    return out


def text(body: str, *, sender: Optional[Dict[str, str]] = None, quick_reply: Optional[Sequence[Dict[str, Any]]] = None) -> Message:
    msg: Message = {"type": "text", "text": truncate(body, MAX_TEXT_LENGTH)}
    if sender:
        msg["sender"] = sender
    if quick_reply:
        with_quick_reply(msg, quick_reply)
    return msg


def image(url: str, preview_url: Optional[str] = None) -> Message:
    return {"type": "image", "originalContentUrl": url, "previewImageUrl": preview_url or url}


def text_chunks(lines: Iterable[str], *, header: str = "", limit: int = MAX_TEXT_LENGTH) -> List[str]:
    """
    Pack lines into as few text bodies as possible without exceeding ``limit``
    codepoints each. A single over-long line is truncated.
    """
    chunks: List[str] = []
    current = header
    for line in lines:
        line = truncate(line, limit)
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


# -----------------------------------------------------------------------------
# Actions and quick replies
# -----------------------------------------------------------------------------
def message_action(label: str, text_to_send: str) -> Dict[str, Any]:
    return {"type": "message", "label": truncate(label, MAX_LABEL_LENGTH), "text": text_to_send}


def postback_action(label: str, pb: Postback, display_text: Optional[str] = None) -> Dict[str, Any]:
    action = {"type": "postback", "label": truncate(label, MAX_LABEL_LENGTH), "data": pb_codec.encode(pb)}
    if display_text:
        action["displayText"] = truncate(display_text, 300)
    return action


def uri_action(label: str, uri: str) -> Dict[str, Any]:
    return {"type": "uri", "label": truncate(label, MAX_LABEL_LENGTH), "uri": uri}


def clipboard_action(label: str, data: str) -> Dict[str, Any]:
    return {"type": "clipboard", "label": truncate(label, MAX_LABEL_LENGTH), "clipboardText": data}


def with_quick_reply(msg: Message, actions: Sequence[Dict[str, Any]]) -> Message:
    items = [{"type": "action", "action": a} for a in list(actions)[:MAX_QUICK_REPLY_ITEMS]]
    if items:
        msg["quickReply"] = {"items": items}
    return msg


# -----------------------------------------------------------------------------
# Flex bubbles / carousels
# -----------------------------------------------------------------------------
def _text_component(value: str, **style) -> Dict[str, Any]:
    comp = {"type": "text", "text": value, "wrap": True}
    comp.update(style)
    return comp


def bubble(
    title: str,
    rows: Sequence[Tuple[str, str]] = (),
    *,
    subtitle: str = "",
    badge: str = "",
    buttons: Sequence[Dict[str, Any]] = (),
) -> Dict[str, Any]:
    """
    A compact info card: title (+ optional badge/subtitle), label/value rows,
    and up to four footer buttons. Empty rows are skipped.
    """
    header: List[Dict[str, Any]] = []
    if badge:
        header.append(_text_component(badge, size="xs", color="#1DB446", weight="bold"))
    header.append(_text_component(truncate(title, 120), weight="bold", size="lg"))
    if subtitle:
        header.append(_text_component(truncate(subtitle, 120), size="sm", color="#888888"))

    body_rows = []
    for label, value in rows:
        if not value:
            continue
        body_rows.append({
            "type": "box",
            "layout": "baseline",
            "spacing": "sm",
            "contents": [
                _text_component(label, size="sm", color="#aaaaaa", flex=2),
                _text_component(truncate(value, 300), size="sm", color="#666666", flex=5),
            ],
        })

    out: Dict[str, Any] = {
        "type": "bubble",
        "header": {"type": "box", "layout": "vertical", "contents": header},
    }
    if body_rows:
        out["body"] = {"type": "box", "layout": "vertical", "spacing": "sm", "contents": body_rows}
    if buttons:
        out["footer"] = {
            "type": "box",
            "layout": "vertical",
            "spacing": "sm",
            "contents": [
                {"type": "button", "style": "link", "height": "sm", "action": action}
                for action in list(buttons)[:4]
            ],
        }
    return out


def carousel(alt_text: str, bubbles: Sequence[Dict[str, Any]]) -> Message:
    if not bubbles:
        raise ValueError("carousel needs at least one bubble")
    if len(bubbles) > MAX_CAROUSEL_BUBBLES:
        raise ValueError(f"carousel holds at most {MAX_CAROUSEL_BUBBLES} bubbles")
    return {
        "type": "flex",
        "altText": truncate(alt_text, MAX_ALT_TEXT_LENGTH),
        "contents": {"type": "carousel", "contents": list(bubbles)},
    }


def carousels(
    alt_text: str,
    bubbles: Sequence[Dict[str, Any]],
    *,
    note: Optional[Message] = None,
    max_messages: int = LINE_MAX_MESSAGES_PER_REPLY,
) -> List[Message]:
    """
    Split bubbles into carousels of at most ten, reserving one slot for
    ``note`` when given. Bubbles that do not fit the envelope are dropped,
    so callers should cap their result set first.
    """
    capacity = max_messages - (1 if note else 0)
    out: List[Message] = []
    for start in range(0, len(bubbles), MAX_CAROUSEL_BUBBLES):
        if len(out) >= capacity:
            break
        out.append(carousel(alt_text, bubbles[start:start + MAX_CAROUSEL_BUBBLES]))
    if note:
        out.append(note)
    return out


# -----------------------------------------------------------------------------
# Envelope helpers
# -----------------------------------------------------------------------------
def attach_quote_token(messages: List[Message], token: str) -> List[Message]:
    """Quote the user's message on the first outgoing message when it supports quoting."""
    if token and messages and messages[0].get("type") in QUOTABLE_TYPES:
        messages[0]["quoteToken"] = token
    return messages


def limit_envelope(messages: List[Message], max_messages: int = LINE_MAX_MESSAGES_PER_REPLY) -> List[Message]:
    """
    Final guard before posting: keep at most ``max_messages``. When something
    is cut, the last kept slot becomes a short "results trimmed" note.
    """
    if len(messages) <= max_messages:
        return messages
    kept = messages[:max_messages]
    kept[-1] = text("⚠️ 結果過多，部分內容未顯示，請縮小查詢範圍。")
    return kept
