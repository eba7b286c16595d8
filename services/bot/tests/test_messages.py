import pytest

from campusbot import messages
from campusbot.handlers.search import cap, cap_cards
from campusbot.postback import make


def _bubbles(n):
    return [messages.bubble(f"card {i}") for i in range(n)]


def test_carousels_split_by_ten_and_keep_room_for_note():
    note = messages.text("note")
    out = messages.carousels("alt", _bubbles(25), note=note)
    assert [m["type"] for m in out] == ["flex", "flex", "flex", "text"]
    assert [len(m["contents"]["contents"]) for m in out[:3]] == [10, 10, 5]


def test_carousels_drop_what_does_not_fit():
    out = messages.carousels("alt", _bubbles(60), note=messages.text("note"), max_messages=5)
    assert len(out) == 5
    assert out[-1]["type"] == "text"


def test_carousel_bounds():
    with pytest.raises(ValueError):
        messages.carousel("alt", [])
    with pytest.raises(ValueError):
        messages.carousel("alt", _bubbles(11))


def test_limit_envelope_replaces_last_slot_with_note():
    msgs = [messages.text(str(i)) for i in range(7)]
    out = messages.limit_envelope(msgs, 5)
    assert len(out) == 5
    assert out[3]["text"] == "3"
    assert "部分內容未顯示" in out[-1]["text"]
    assert messages.limit_envelope(msgs[:2], 5) == msgs[:2]


def test_quote_token_only_on_quotable_first_message():
    out = messages.attach_quote_token([messages.text("hi"), messages.text("there")], "q-token")
    assert out[0]["quoteToken"] == "q-token"
    assert "quoteToken" not in out[1]

    flex = messages.attach_quote_token([messages.carousel("alt", _bubbles(1))], "q-token")
    assert "quoteToken" not in flex[0]


def test_bubble_skips_empty_rows_and_caps_buttons():
    card = messages.bubble(
        "title",
        [("a", "1"), ("b", ""), ("c", "3")],
        buttons=[messages.uri_action(str(i), "https://example.test") for i in range(6)],
    )
    assert len(card["body"]["contents"]) == 2
    assert len(card["footer"]["contents"]) == 4


def test_actions_truncate_labels():
    action = messages.postback_action("x" * 40, make("course", "uid", uid="1131U0001"), "看課程")
    assert len(action["label"]) == messages.MAX_LABEL_LENGTH
    assert action["displayText"] == "看課程"
    quick = messages.with_quick_reply(messages.text("t"), [messages.message_action(str(i), "x") for i in range(20)])
    assert len(quick["quickReply"]["items"]) == messages.MAX_QUICK_REPLY_ITEMS


def test_text_chunks_pack_lines():
    chunks = messages.text_chunks(["a" * 4, "b" * 4, "c" * 4], header="H", limit=10)
    assert chunks == ["H\naaaa", "bbbb\ncccc"]


def test_cap_and_cap_cards():
    assert cap(list(range(5)), 10) == ([0, 1, 2, 3, 4], 0)
    assert cap(list(range(5)), 3) == ([0, 1, 2], 2)

    kept, omitted = cap_cards(list(range(30)), 50, 5)
    assert (len(kept), omitted) == (30, 0)
    # truncated results give up one carousel for the note
    kept, omitted = cap_cards(list(range(60)), 50, 5)
    assert (len(kept), omitted) == (40, 20)
    kept, omitted = cap_cards(list(range(60)), 100, 5)
    assert (len(kept), omitted) == (40, 20)
