import json

import pytest

from campusbot.errors import PostbackError
from campusbot.postback import decode, encode, make


def test_encode_is_compact_json():
    data = encode(make("course", "uid", uid="1131U0001"))
    assert json.loads(data) == {"m": "course", "a": "uid", "p": {"uid": "1131U0001"}}

    pb = decode(data)
    assert pb.module == "course"
    assert pb.action == "uid"
    assert pb.get("uid") == "1131U0001"
    assert pb.get("missing", "x") == "x"


def test_params_are_stringified():
    pb = decode(encode(make("student", "dept", y=112, d="85")))
    assert pb.params == {"y": "112", "d": "85"}


def test_encode_rejects_oversized_payload():
    """
    Non-ASCII parameters count in UTF-8 bytes against the platform limit.
    """
    with pytest.raises(PostbackError):
        encode(make("contact", "members", org="資" * 120))


@pytest.mark.parametrize("data", [
    "course:uid$1131U0001",
    "",
    "{not json}",
    '{"m": "course"}',
    '{"m": "", "a": "uid"}',
    '{"m": "course", "a": "uid", "extra": 1}',
])
def test_decode_rejects_foreign_formats(data):
    with pytest.raises(PostbackError):
        decode(data)
