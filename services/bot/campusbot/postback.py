"""
Postback payload codec.

Buttons carry a compact JSON record ``{"m": module, "a": action, "p": {...}}``.
Encoding validates the platform's byte limit up front so an oversized
payload fails when the reply is built, not when the platform rejects it.
Anything that is not this JSON shape (including the old ``module:action$arg``
strings) is rejected on decode.
"""

from typing import Dict

from pydantic import BaseModel, Field, ValidationError

from common.config import LINE_MAX_POSTBACK_BYTES

from .errors import PostbackError


class Postback(BaseModel):
    module: str = Field(..., alias="m", min_length=1)
    action: str = Field(..., alias="a", min_length=1)
    params: Dict[str, str] = Field(default_factory=dict, alias="p")

    model_config = {"populate_by_name": True, "frozen": True, "extra": "forbid"}

    def get(self, name: str, default: str = "") -> str:
        return self.params.get(name, default)


def make(module: str, action: str, **params) -> Postback:
    return Postback(module=module, action=action, params={k: str(v) for k, v in params.items()})


def encode(pb: Postback, max_bytes: int = LINE_MAX_POSTBACK_BYTES) -> str:
    """
    Serialise to the compact JSON form; raise PostbackError when the UTF-8
    payload exceeds ``max_bytes``.
    """
    data = pb.model_dump_json(by_alias=True, exclude_defaults=True)
    size = len(data.encode("utf-8"))
    if size > max_bytes:
        raise PostbackError(f"postback payload is {size} bytes (limit {max_bytes}): {pb.module}/{pb.action}")
    return data


def decode(data: str) -> Postback:
    data = data.strip()
    if not data.startswith("{"):
        raise PostbackError("unsupported postback format")
    try:
        return Postback.model_validate_json(data)
    except ValidationError as exc:
        raise PostbackError(f"invalid postback payload: {exc.error_count()} error(s)") from exc
