from __future__ import annotations

import asyncio

import pytest

from acpthread.changed_files import ChangedFilesTracker
from acpthread.engine import SessionEngine
from acpthread.follow import FollowTracker
from tests.utils import FakeConnection, Recorder, make_engine, message_chunk, plan_update, thought_chunk, tool_call, tool_call_update


def test_edit_tool_call_produces_one_result_and_one_write(tmp_path) -> None:
    engine, conn, scheduler, rec = make_engine()
    engine.cwd = str(tmp_path)
    tracker = ChangedFilesTracker()
    tracker.attach(engine)
    target = tmp_path / "src" / "a.lua"
    target.parent.mkdir()
    target.write_text("local a = 1\n", encoding="utf-8")

    conn.emit(tool_call("t1", "Edit(src/a.lua)", status="pending"))
    scheduler.run()
    target.write_text("local a = 2\nreturn a\n", encoding="utf-8")
    conn.emit(tool_call_update("t1", status="completed"))
    scheduler.run()

    tool_messages = [m for m in engine.history if m.tool_call is not None]
    results = [m for m in engine.history if m.tool_result() is not None]
    assert len(tool_messages) == 1
    assert tool_messages[0].tool_call.status == "completed"
    assert len(results) == 1
    assert results[0].tool_result().is_error is False

    assert [(event.path, event.tool_call_id) for event in tracker.events] == [(target, "t1")]
    (stats,) = tracker.stats()
    assert stats.label == "+2 -1"


@pytest.mark.asyncio
async def test_full_turn_with_default_scheduler(tmp_path) -> None:
    rec = Recorder()
    conn = FakeConnection()
    engine = SessionEngine(callbacks=rec.callbacks(), connection=conn)
    follow = FollowTracker(tmp_path)
    followed = []
    follow.subscribe(followed.append)
    follow.attach(engine)
    await engine.create_session(str(tmp_path))

    def _agent_turn(c) -> None:
        c.emit(thought_chunk("Looking at the code"))
        c.emit(plan_update(("Read main.py", "in_progress"), ("Fix it", "pending")))
        c.emit(tool_call("r1", "Read(main.py)", status="pending", kind="read"))
        c.emit(tool_call_update("r1", status="completed", locations=[{"path": "main.py", "line": 3}]))
        c.emit(message_chunk("Done."))

    conn.on_prompt = _agent_turn
    await engine.send_prompt("fix main.py")
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    roles = [m.role for m in engine.history]
    assert roles[0] == "user"
    assert engine.history.last().content == "Done."
    assert engine.plan_progress() == "Plan: 0/2 | Read main.py"
    assert followed[-1].path == tmp_path / "main.py"
    assert followed[-1].line == 3
    assert rec.of("on_stop")[0][0].reason == "complete"
    assert rec.of("on_chunk") == [("Done.",)]
