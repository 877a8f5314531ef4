from __future__ import annotations

import pytest

from conftest import button_data, button_texts
from vf_bridge.config import get_config
from vf_bridge.enums import KeyboardKind, MediaKind
from vf_bridge.models import MessageRef, TurnContext
from vf_bridge.streaming.completion import CompletionStreamer
from vf_bridge.trace_dispatcher import TraceDispatcher

CTX = TurnContext(user_id=1, chat_id=10)

TWO_BUTTONS = {
    "type": "choice",
    "payload": {
        "buttons": [
            {"name": "Yes", "request": {"type": "path-yes", "payload": {"label": "Yes"}}},
            {"name": "No", "request": {"type": "intent", "payload": {"intent": "no_intent"}}},
        ]
    },
}


def _text(message):
    return {"type": "text", "payload": {"message": message}}


def _dispatcher(sink, resolver, stash, tracker, streamer=None):
    return TraceDispatcher(
        sink, resolver, stash, tracker, streamer,
        keyboard_retry_delay=0.0, carousel_card_delay=0.0, choice_prompt_text="Choose an option:",
    )


@pytest.mark.asyncio
async def test_choice_attaches_to_the_text_message(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    handled = await dispatcher.dispatch(CTX, [_text("Do you want **more**?"), TWO_BUTTONS])

    assert handled == 1
    sends = sink.ops("send_text")
    assert [s["html"] for s in sends] == ["Do you want <b>more</b>?"]
    edits = sink.ops("edit_keyboard")
    assert len(edits) == 1
    assert edits[0]["message_id"] == sends[0]["message_id"]
    assert button_texts(edits[0]["reply_markup"]) == ["Yes", "No"]
    assert button_data(edits[0]["reply_markup"]) == ["Yes", "no_intent"]
    assert tracker.get(CTX.user_id).keyboard_kind is KeyboardKind.CHOICE


@pytest.mark.asyncio
async def test_choice_never_overwrites_card_buttons(sink, resolver, stash, tracker):
    tracker.record(CTX.user_id, MessageRef(10, 55, KeyboardKind.CARD))
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    await dispatcher.dispatch(CTX, [TWO_BUTTONS])

    assert sink.ops("edit_keyboard") == []
    sends = sink.ops("send_text")
    assert len(sends) == 1
    assert sends[0]["html"] == "Choose an option:"
    assert button_texts(sends[0]["reply_markup"]) == ["Yes", "No"]
    assert tracker.get(CTX.user_id).message_id == sends[0]["message_id"]


@pytest.mark.asyncio
async def test_lone_choice_uses_tracked_last_message(sink, resolver, stash, tracker):
    tracker.record(CTX.user_id, MessageRef(10, 42))
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    await dispatcher.dispatch(CTX, [TWO_BUTTONS])

    assert sink.ops("send_text") == []
    assert sink.ops("edit_keyboard")[0]["message_id"] == 42


@pytest.mark.asyncio
async def test_failed_attach_falls_back_to_prompt_message(sink, resolver, stash, tracker):
    tracker.record(CTX.user_id, MessageRef(10, 42))
    sink.fail_next("edit_keyboard")
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    await dispatcher.dispatch(CTX, [TWO_BUTTONS])
    assert [s["html"] for s in sink.ops("send_text")] == ["Choose an option:"]


@pytest.mark.asyncio
async def test_text_with_image_is_split_and_choice_goes_on_last_part(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    await dispatcher.dispatch(CTX, [_text("Look ![p](https://x.com/p.png) nice, right?"), TWO_BUTTONS])

    assert sink.op_names() == ["send_text", "send_media", "send_text", "edit_keyboard"]
    last_text = sink.ops("send_text")[-1]
    assert sink.ops("edit_keyboard")[0]["message_id"] == last_text["message_id"]


@pytest.mark.asyncio
async def test_gallery_lines_become_captioned_images(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    text = (
        "Here are our picks:\n"
        "**Cafe Uno**\n"
        "![uno](https://x.com/uno.png)\n"
        "[View Menu](https://x.com/menu/uno)\n"
        "Bar Due\n"
        "![due](https://x.com/due.png)\n"
        "Enjoy!"
    )
    await dispatcher.dispatch(CTX, [_text(text), TWO_BUTTONS])

    assert sink.op_names() == ["send_text", "send_media", "send_media", "send_text", "edit_keyboard"]
    assert [s["html"] for s in sink.ops("send_text")] == ["Here are our picks:", "Enjoy!"]
    captions = [m["caption"] for m in sink.ops("send_media")]
    assert captions == [
        '<b>Cafe Uno</b>\n<a href="https://x.com/menu/uno">View Menu</a>',
        "Bar Due",
    ]
    assert sink.ops("edit_keyboard")[0]["message_id"] == sink.ops("send_text")[-1]["message_id"]


@pytest.mark.asyncio
async def test_synthetic_buttons_are_pulled_out_of_text(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    await dispatcher.dispatch(CTX, [_text("Pick a size\n[[Small]]\n[Large](button:size_large)")])

    assert [s["html"] for s in sink.ops("send_text")] == ["Pick a size"]
    markup = sink.ops("edit_keyboard")[0]["reply_markup"]
    assert button_texts(markup) == ["Small", "Large"]
    assert button_data(markup) == ["Small", "size_large"]


@pytest.mark.asyncio
async def test_streamed_text_is_not_repeated(sink, resolver, stash, tracker):
    streamer = CompletionStreamer(sink, resolver, tracker, min_edit_interval=0.0)
    await streamer.handle(CTX, {"state": "start"})
    await streamer.handle(CTX, {"state": "content", "content": "Hello world."})
    await streamer.handle(CTX, {"state": "end"})
    bubble_id = sink.ops("send_text")[0]["message_id"]

    dispatcher = _dispatcher(sink, resolver, stash, tracker, streamer)
    traces = [
        {"type": "completion", "payload": {"state": "start"}},
        {"type": "completion", "payload": {"state": "content", "content": "Hello world."}},
        {"type": "completion", "payload": {"state": "end"}},
        _text("Hello world."),
        TWO_BUTTONS,
    ]
    await dispatcher.dispatch(CTX, traces)

    assert len(sink.ops("send_text")) == 1
    assert sink.ops("edit_keyboard")[0]["message_id"] == bubble_id


@pytest.mark.asyncio
async def test_streamed_text_still_contributes_synthetic_buttons(sink, resolver, stash, tracker):
    streamer = CompletionStreamer(sink, resolver, tracker, min_edit_interval=0.0)
    answer = "Want the recipe?\n[[Yes please]]"
    await streamer.handle(CTX, {"state": "start"})
    await streamer.handle(CTX, {"state": "content", "content": answer})
    await streamer.handle(CTX, {"state": "end"})
    bubble_id = sink.ops("send_text")[0]["message_id"]
    assert sink.texts[bubble_id] == "Want the recipe?"

    dispatcher = _dispatcher(sink, resolver, stash, tracker, streamer)
    await dispatcher.dispatch(CTX, [_text(answer), TWO_BUTTONS])

    assert len(sink.ops("send_text")) == 1
    edit = sink.ops("edit_keyboard")[0]
    assert edit["message_id"] == bubble_id
    assert button_texts(edit["reply_markup"]) == ["Yes", "No", "Yes please"]


@pytest.mark.asyncio
async def test_card_v2_with_buttons_retries_keyboard_once(sink, resolver, stash, tracker):
    sink.fail_next("edit_keyboard")
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    card = {
        "type": "cardV2",
        "payload": {
            "title": "Pizza",
            "description": {"text": "Hot and **fresh**"},
            "imageUrl": "https://x.com/pizza.jpg",
            "buttons": [{"name": "Order", "request": {"type": "order", "payload": {"id": 3}}}],
        },
    }
    await dispatcher.dispatch(CTX, [card])

    assert [s["html"] for s in sink.ops("send_text")] == ["Hot and <b>fresh</b>"]
    media = sink.ops("send_media")[0]
    assert media["caption"] == "Pizza"
    assert sink.attempts["edit_keyboard"] == 2
    edit = sink.ops("edit_keyboard")[0]
    assert edit["message_id"] == media["message_id"]
    assert button_data(edit["reply_markup"]) == ['RQ:{"type":"order","payload":{"id":3}}']
    assert tracker.get(CTX.user_id).keyboard_kind is KeyboardKind.CARD


@pytest.mark.asyncio
async def test_card_keyboard_gives_up_after_second_failure(sink, resolver, stash, tracker):
    sink.fail_next("edit_keyboard", times=2)
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    card = {"type": "cardV2", "payload": {"title": "T", "buttons": [{"name": "B", "request": {"type": "x"}}]}}
    await dispatcher.dispatch(CTX, [card])
    assert sink.attempts["edit_keyboard"] == 2
    assert tracker.get(CTX.user_id).keyboard_kind is KeyboardKind.NONE


@pytest.mark.asyncio
async def test_legacy_card_text_and_media(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    card = {
        "type": "card",
        "payload": {"title": "Store", "description": "Open late", "url": "https://store.example.com", "image": "https://x.com/s.png"},
    }
    await dispatcher.dispatch(CTX, [card])
    assert [s["html"] for s in sink.ops("send_text")] == ["Open late\nhttps://store.example.com"]
    assert sink.ops("send_media")[0]["caption"] == "Store"


@pytest.mark.asyncio
async def test_carousel_sends_each_card_with_its_buttons(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    carousel = {
        "type": "carousel",
        "payload": {
            "cards": [
                {"title": "One", "description": {"text": "first"}, "imageUrl": "https://x.com/1.png",
                 "buttons": [{"name": "Pick 1", "request": {"type": "pick", "payload": 1}}]},
                {"title": "Two", "description": "second"},
            ]
        },
    }
    await dispatcher.dispatch(CTX, [carousel])

    media = sink.ops("send_media")
    assert media[0]["caption"] == "One\n\nfirst"
    assert [s["html"] for s in sink.ops("send_text")] == ["Two\n\nsecond"]
    edits = sink.ops("edit_keyboard")
    assert len(edits) == 1
    assert edits[0]["message_id"] == media[0]["message_id"]


@pytest.mark.asyncio
async def test_visual_trace_and_unknown_types(sink, resolver, stash, tracker):
    dispatcher = _dispatcher(sink, resolver, stash, tracker)
    handled = await dispatcher.dispatch(CTX, [
        {"type": "visual", "payload": {"image": "https://x.com/anim.gif"}},
        {"type": "completion", "payload": {"state": "start"}},
        {"type": "debug", "payload": {}},
    ])
    assert handled == 1
    media = sink.ops("send_media")
    assert media[0]["kind"] is MediaKind.ANIMATION
    assert tracker.get(CTX.user_id).message_id == media[0]["message_id"]


def test_default_prompt_comes_from_config(sink, resolver, stash, tracker):
    dispatcher = TraceDispatcher(sink, resolver, stash, tracker)
    assert dispatcher.choice_prompt_text == get_config().CHOICE_PROMPT_TEXT
