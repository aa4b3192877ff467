from __future__ import annotations

import asyncio
import logging

import pytest
from acp.helpers import session_notification, text_block, update_agent_message, update_agent_thought

from acpthread.engine import SessionEngine
from acpthread.messages import TextContent, ThinkingContent
from tests.utils import FakeConnection, Recorder, make_engine, message_chunk, thought_chunk


def test_message_chunks_merge_into_one_assistant_message() -> None:
    engine, conn, scheduler, rec = make_engine()

    for piece in ("Hel", "lo ", "world"):
        conn.emit(message_chunk(piece))

    assert len(engine.history) == 1
    message = engine.history[0]
    assert message.role == "assistant"
    assert message.content == "Hello world"

    scheduler.run()
    assert [args[0] for args in rec.of("on_chunk")] == ["Hel", "lo ", "world"]
    batches = [args[0] for args in rec.of("on_messages_add")]
    assert [batch[0].content for batch in batches] == ["Hel", "Hello ", "Hello world"]


def test_observer_receives_copies_not_live_messages() -> None:
    engine, conn, scheduler, rec = make_engine()
    conn.emit(message_chunk("hi"))
    scheduler.run()

    delivered = rec.of("on_messages_add")[0][0][0]
    delivered.content = "tampered"

    assert engine.history[0].content == "hi"


def test_callbacks_are_deferred_until_the_scheduler_runs() -> None:
    engine, conn, scheduler, rec = make_engine()

    conn.emit(message_chunk("x"))

    assert rec.events == []
    assert scheduler.queue
    scheduler.run()
    assert "on_messages_add" in rec.names()


def test_thought_chunks_never_touch_the_text_message() -> None:
    engine, conn, scheduler, _ = make_engine()

    conn.emit(message_chunk("answer"))
    conn.emit(thought_chunk("hmm"))
    conn.emit(thought_chunk(" more"))
    conn.emit(message_chunk("!"))

    contents = [message.content for message in engine.history]
    assert contents[0] == "answer"
    assert contents[1] == [ThinkingContent(thinking="hmm more")]
    assert contents[2] == "!"
    assert len(engine.history) == 3


def test_text_appends_to_last_text_item_of_structured_content() -> None:
    engine, conn, _, _ = make_engine()
    conn.emit(thought_chunk("plan"))
    engine.history[0].content.append(TextContent(text="draft"))

    conn.emit(message_chunk(" done"))

    assert len(engine.history) == 1
    assert engine.history[0].text() == "draft done"
    assert engine.history[0].thinking() == "plan"


def test_chunk_delta_offset_resets_for_a_new_text_message() -> None:
    engine, conn, scheduler, rec = make_engine()

    conn.emit(message_chunk("first"))
    conn.emit(thought_chunk("pondering"))
    conn.emit(message_chunk("second"))
    scheduler.run()

    assert [args[0] for args in rec.of("on_chunk")] == ["first", "second"]


def test_non_text_chunks_and_unknown_kinds_are_ignored() -> None:
    engine, conn, scheduler, rec = make_engine()

    conn.emit({"sessionUpdate": "agent_message_chunk", "content": {"type": "image", "data": "AA==", "mimeType": "image/png"}})
    conn.emit({"sessionUpdate": "usage_update", "used": 10})
    scheduler.run()

    assert len(engine.history) == 0
    assert rec.events == []


def test_protocol_models_are_accepted() -> None:
    engine, conn, _, _ = make_engine()

    conn.emit(update_agent_message(text_block("from ")))
    conn.emit(session_notification("sess-1", update_agent_message(text_block("models"))))
    conn.emit(update_agent_thought(text_block("why")))

    assert engine.history[0].content == "from models"
    assert engine.history[1].thinking() == "why"


def test_updates_for_other_sessions_are_ignored() -> None:
    engine, conn, _, _ = make_engine()
    engine.session_id = "sess-1"

    conn.emit(message_chunk("elsewhere"), session_id="sess-2")

    assert len(engine.history) == 0


def test_failing_observer_is_logged_and_does_not_stop_delivery(caplog: pytest.LogCaptureFixture) -> None:
    rec = Recorder()

    def _boom(_text: str) -> None:
        raise RuntimeError("observer broke")

    conn = FakeConnection()
    engine, conn, scheduler, rec = make_engine(conn, recorder=rec)
    engine.set_callbacks(rec.callbacks(on_chunk=_boom))

    conn.emit(message_chunk("still here"))
    with caplog.at_level(logging.ERROR):
        scheduler.run()

    assert "Observer callback failed" in caplog.text
    assert len(rec.of("on_messages_add")) == 1


@pytest.mark.asyncio
async def test_default_scheduler_defers_to_the_event_loop() -> None:
    rec = Recorder()
    conn = FakeConnection()
    engine = SessionEngine(callbacks=rec.callbacks(), connection=conn)

    conn.emit(message_chunk("later"))
    assert rec.of("on_chunk") == []

    await asyncio.sleep(0)
    assert rec.of("on_chunk") == [("later",)]
    assert engine.history[0].content == "later"


def test_an_empty_injected_scheduler_is_still_used() -> None:
    class ListScheduler(list):
        __call__ = list.append

    queue = ListScheduler()
    rec = Recorder()
    conn = FakeConnection()
    SessionEngine(connection=conn, scheduler=queue, callbacks=rec.callbacks())

    conn.emit(message_chunk("x"))

    assert rec.events == []
    assert queue
    for callback in queue:
        callback()
    assert rec.of("on_chunk") == [("x",)]
