from __future__ import annotations

from acp.helpers import plan_entry, update_plan

from acpthread.config import EngineConfig, ToolMatcher
from acpthread.plan import PlanEntry, PlanTracker, TodoItem
from tests.utils import make_engine, plan_update, tool_call, tool_call_update


def test_replaying_a_plan_is_idempotent() -> None:
    engine, conn, scheduler, rec = make_engine()
    update = plan_update(("one", "completed"), ("two", "in_progress"), ("three", "pending"))

    conn.emit(update)
    first = list(engine.plan_entries)
    conn.emit(update)

    assert engine.plan_entries == first
    assert len(engine.plan_entries) == 3
    scheduler.run()
    assert rec.of("on_plan_update")[0] == rec.of("on_plan_update")[1]


def test_plan_update_maps_statuses_to_todos() -> None:
    engine, conn, scheduler, rec = make_engine()

    conn.emit(plan_update(("a", "pending"), ("b", "in_progress"), ("c", "completed")))
    scheduler.run()

    (todos,) = rec.of("on_plan_update")[0]
    assert todos == [
        TodoItem(id="1", content="a", status="todo", priority="medium"),
        TodoItem(id="2", content="b", status="doing", priority="medium"),
        TodoItem(id="3", content="c", status="done", priority="medium"),
    ]


def test_plan_from_protocol_models() -> None:
    engine, conn, _, _ = make_engine()
    conn.emit(update_plan([plan_entry("write tests"), plan_entry("ship", status="completed")]))
    assert [(e.content, e.status) for e in engine.plan_entries] == [
        ("write tests", "pending"),
        ("ship", "completed"),
    ]


def test_todo_tool_call_replaces_the_plan() -> None:
    engine, conn, scheduler, rec = make_engine()
    todos = [
        {"content": "Investigate", "status": "completed", "activeForm": "Investigating"},
        {"content": "", "status": "in_progress", "activeForm": "Fixing the bug"},
    ]

    conn.emit(tool_call("todo-1", "TodoWrite", status="pending", raw_input={"todos": todos}))
    scheduler.run()

    assert [(e.content, e.status) for e in engine.plan_entries] == [
        ("Investigate", "completed"),
        ("Fixing the bug", "in_progress"),
    ]
    (items,) = rec.of("on_plan_update")[-1]
    assert [item.status for item in items] == ["done", "doing"]
    assert all(item.priority is None for item in items)


def test_todo_update_with_raw_input_replaces_the_plan() -> None:
    engine, conn, _, _ = make_engine()
    conn.emit(tool_call("w1", "write_todos", status="pending"))
    assert engine.plan_entries == []

    conn.emit(tool_call_update("w1", raw_input={"todos": [{"content": "later", "status": "pending"}]}))

    assert [e.content for e in engine.plan_entries] == ["later"]


def test_todo_tool_with_empty_list_keeps_plan() -> None:
    engine, conn, _, _ = make_engine()
    conn.emit(plan_update(("keep", "pending")))
    conn.emit(tool_call("todo-2", "TodoWrite", raw_input={"todos": []}))
    assert [e.content for e in engine.plan_entries] == ["keep"]


def test_todo_tool_recognised_by_category_tag() -> None:
    engine, conn, _, _ = make_engine()
    update = tool_call("x1", "Update task list", raw_input={"todos": [{"content": "tagged", "status": "pending"}]})
    update["_meta"] = {"category": "plan_write"}

    conn.emit(update)

    assert [e.content for e in engine.plan_entries] == ["tagged"]


def test_custom_plan_tool_names_come_from_config() -> None:
    config = EngineConfig(tools=ToolMatcher(plan_write_tools=("TaskBoard",)))
    engine, conn, _, _ = make_engine(config=config)

    conn.emit(tool_call("c1", "TaskBoard", raw_input={"todos": [{"content": "custom", "status": "pending"}]}))
    conn.emit(tool_call("c2", "TodoWrite", raw_input={"todos": [{"content": "ignored", "status": "pending"}]}))

    assert [e.content for e in engine.plan_entries] == ["custom"]


def test_plan_mode_tools_set_flags_and_refresh() -> None:
    engine, conn, scheduler, rec = make_engine()

    conn.emit(tool_call("p1", "EnterPlanMode", status="pending"))
    scheduler.run()
    assert engine.in_plan_mode is True
    assert engine.plan_presented is False
    assert ("idle", "idle") in rec.of("on_state_change")

    conn.emit(tool_call("p2", "ExitPlanMode", status="pending", raw_input={"plan": "1. do it"}))
    conn.emit(plan_update(("do it", "pending")))
    assert engine.plan_presented is True
    scheduler.run()

    engine.reset_plan_mode()
    scheduler.run()
    assert engine.in_plan_mode is False
    assert engine.plan_presented is False
    assert engine.plan_entries == []
    assert rec.of("on_plan_update")[-1] == ([],)


def test_legacy_plan_mode_title_pattern() -> None:
    engine, conn, _, _ = make_engine()
    conn.emit(tool_call("p1", "Enter the plan mode now"))
    assert engine.in_plan_mode is True


def test_plan_stats_and_progress_string() -> None:
    tracker = PlanTracker()
    assert tracker.progress_string() is None

    tracker.replace(
        [
            {"content": "done", "status": "completed"},
            {"content": "x" * 50, "status": "in_progress"},
            {"content": "next", "status": "pending"},
        ]
    )

    stats = tracker.stats()
    assert (stats.total, stats.completed, stats.in_progress, stats.pending) == (3, 1, 1, 1)
    assert tracker.progress_string() == "Plan: 1/3 | " + "x" * 37 + "..."


def test_progress_string_without_active_step() -> None:
    tracker = PlanTracker()
    tracker.replace([{"content": "a", "status": "completed"}, {"content": "b", "status": "pending"}])
    assert tracker.progress_string() == "Plan: 1/2"


def test_plan_entry_coerces_loose_shapes() -> None:
    assert PlanEntry.model_validate("just text").content == "just text"
    entry = PlanEntry.model_validate({"activeForm": "Doing", "status": "weird", "priority": "urgent"})
    assert entry.content == "Doing"
    assert entry.status == "pending"
    assert entry.priority is None


def test_plan_markdown_and_file(tmp_path) -> None:
    engine, conn, _, _ = make_engine()
    conn.emit(plan_update(("one", "completed"), ("two", "in_progress"), ("three", "pending")))

    expected = "# Agent Plan\n\n- [x] one\n- [~] two\n- [ ] three\n"
    assert engine.plan_markdown() == expected

    path = engine.write_plan_file(tmp_path / "plans" / "plan.md")
    assert path.read_text(encoding="utf-8") == expected


def test_plan_file_defaults_to_state_dir() -> None:
    engine, conn, _, _ = make_engine()
    engine.session_id = "sess-9"
    conn.emit(plan_update(("one", "pending")))

    path = engine.write_plan_file()

    assert path.name == "sess-9.md"
    assert path.parent.name == "plans"
    assert path.exists()
