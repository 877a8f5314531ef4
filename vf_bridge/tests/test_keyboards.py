from conftest import button_data, button_texts
from vf_bridge.callback_stash import CallbackStash
from vf_bridge.keyboards import (
    button_label,
    button_payload,
    extract_synthetic_buttons,
    make_card_keyboard,
    make_choice_keyboard,
)


def test_label_fallbacks():
    assert button_label({"name": "Menu"}) == "Menu"
    assert button_label({"request": {"payload": {"query": "find shoes"}}}) == "find shoes"
    assert button_label({"request": {"payload": {"text": "hi"}}}) == "hi"
    assert button_label({"request": {"payload": "raw"}}) == "raw"
    assert button_label({"request": {"payload": {"foo": 1}}}) == "Option"
    assert len(button_label({"name": "L" * 100})) == 64


def test_payload_prefers_semantic_value():
    assert button_payload({"name": "A", "request": {"payload": {"intent": "buy"}}}) == "buy"
    assert button_payload({"name": "A", "request": {"payload": 3}}) == "3"
    assert button_payload({"name": "A", "request": {"payload": True}}) == "true"
    assert button_payload({"name": "Go", "request": {"type": "path", "payload": {}}}) == "Go"
    assert button_payload({"name": "Go", "request": {"type": "path-123"}}) == "Go"
    assert button_payload({"request": {"payload": {"intent": "  "}}}) == ""


def test_choice_keyboard_stashes_long_payloads():
    stash = CallbackStash(ttl_seconds=60)
    long_query = "tell me everything about " + "pizza " * 20
    markup = make_choice_keyboard(
        5,
        [
            {"name": "Short", "request": {"payload": {"intent": "short"}}},
            {"name": "Long", "request": {"payload": {"query": long_query}}},
        ],
        stash,
    )
    short_data, long_data = button_data(markup)
    assert short_data == "short"
    assert long_data.startswith("CB:")
    assert stash.take(long_data, 5) == long_query


def test_card_keyboard_serializes_request():
    stash = CallbackStash(ttl_seconds=60)
    markup = make_card_keyboard(5, [{"name": "Buy", "request": {"type": "buy", "payload": {"sku": "é1"}}}], stash)
    assert button_texts(markup) == ["Buy"]
    assert button_data(markup) == ['RQ:{"type":"buy","payload":{"sku":"é1"}}']


def test_card_keyboard_long_request_goes_to_stash():
    stash = CallbackStash(ttl_seconds=60)
    request = {"type": "order", "payload": {"note": "n" * 80}}
    (data,) = button_data(make_card_keyboard(5, [{"name": "Order", "request": request}], stash))
    assert data.startswith("CB:")
    assert stash.take(data, 5).startswith('RQ:{"type":"order"')


def test_synthetic_buttons_in_order_of_appearance():
    text, buttons = extract_synthetic_buttons(
        "Choose [Red](button:pick_red) or wait\n[[Blue]]\n  [[Green]]  \nthanks"
    )
    assert [b["name"] for b in buttons] == ["Red", "Blue", "Green"]
    assert buttons[0]["request"] == {"type": "text", "payload": "pick_red"}
    assert buttons[1]["request"] == {"type": "text", "payload": "Blue"}
    assert text == "Choose  or wait\nthanks"


def test_inline_double_brackets_are_not_buttons():
    text, buttons = extract_synthetic_buttons("see [[wiki]] page")
    assert buttons == []
    assert text == "see [[wiki]] page"
    assert extract_synthetic_buttons("") == ("", [])
