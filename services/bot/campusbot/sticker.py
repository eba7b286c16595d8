"""
Sticker picker. Replies to stickers in personal chats with a random image,
and supplies sender icons for handler replies.

The image pool is static configuration; fetching a larger pool from a remote
source is not needed for the bot to work.
"""

import random
from typing import Dict, Optional, Sequence

from . import messages

DEFAULT_STICKERS = (
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/52002734/iPhone/sticker_key@2x.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/52002735/iPhone/sticker_key@2x.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/52002736/iPhone/sticker_key@2x.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/52002738/iPhone/sticker_key@2x.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/52002740/iPhone/sticker_key@2x.png",
    "https://stickershop.line-scdn.net/stickershop/v1/sticker/52002745/iPhone/sticker_key@2x.png",
)


class StickerManager:
    def __init__(self, urls: Sequence[str] = DEFAULT_STICKERS, rng: Optional[random.Random] = None) -> None:
        self._urls = list(urls)
        self._rng = rng or random.Random()

    def random_url(self) -> str:
        return self._rng.choice(self._urls) if self._urls else ""

    def reply(self) -> messages.Message:
        """An image message used to answer a sticker."""
        return messages.image(self.random_url())

    def sender(self, name: str) -> Dict[str, str]:
        return messages.sender(name, self.random_url())
