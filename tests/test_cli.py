from __future__ import annotations

import asyncio
import json

import pytest

from acpthread import cli
from acpthread.cli import EMBED_LIMIT, CliApp, build_command_registry, build_prompt_blocks
from acpthread.commands import AgentCommand
from tests.utils import FakeConnection, make_engine, plan_update

MODES = [("ask", "Ask"), ("code", "Code")]


def test_prompt_blocks_embed_referenced_files(tmp_path) -> None:
    (tmp_path / "small.py").write_text("print(1)\n", encoding="utf-8")
    (tmp_path / "big.log").write_text("x" * (EMBED_LIMIT + 1), encoding="utf-8")
    line = "look at @small.py and @big.log and @missing.txt"

    blocks = build_prompt_blocks(line, str(tmp_path))

    assert len(blocks) == 3
    assert blocks[0].text == line
    assert blocks[1].resource.text == "print(1)\n"
    assert blocks[1].resource.uri.endswith("/small.py")
    assert blocks[2].type == "resource_link"
    assert blocks[2].size == EMBED_LIMIT + 1


def test_registry_contains_local_commands() -> None:
    registry = build_command_registry()
    names = {entry.name for entry in registry}
    assert {"help", "mode", "config", "plan", "files", "sessions", "new", "exit", "quit"} <= names
    assert all(entry.source == "local" for entry in registry)
    assert build_command_registry().get("mode") is not registry.get("mode")


@pytest.mark.asyncio
async def test_local_commands_run_and_agent_commands_are_forwarded() -> None:
    registry = build_command_registry()
    engine, conn, _, _ = make_engine(FakeConnection(modes=MODES, current_mode="ask"), command_registry=registry)
    app = CliApp(engine)
    await engine.create_session("/work")
    registry.publish([AgentCommand(name="review")])

    assert await app.handle_slash("/mode code") is True
    assert engine.current_mode_id == "code"
    assert await app.handle_slash("/review src") is False
    assert await app.handle_slash("/unknown") is False


@pytest.mark.asyncio
async def test_plan_write_command(tmp_path) -> None:
    engine, conn, _, _ = make_engine(command_registry=build_command_registry())
    app = CliApp(engine)
    conn.emit(plan_update(("first", "completed"), ("second", "pending")))
    target = tmp_path / "plan.md"

    assert await app.handle_slash(f"/plan write {target}") is True

    assert target.read_text(encoding="utf-8") == "# Agent Plan\n\n- [x] first\n- [ ] second\n"


@pytest.mark.asyncio
async def test_new_command_starts_a_fresh_session() -> None:
    engine, conn, _, _ = make_engine(command_registry=build_command_registry())
    app = CliApp(engine)
    await engine.create_session("/work")
    engine.title = "Old"

    assert await app.handle_slash("/new") is True

    assert engine.title is None
    assert engine.session_id == "sess-1"
    assert conn.call_names().count("create_session") == 2


@pytest.mark.asyncio
async def test_interrupt_cancels_a_running_turn() -> None:
    engine, conn, _, _ = make_engine(command_registry=build_command_registry())
    app = CliApp(engine)
    await engine.create_session("/work")
    conn.prompt_gate = asyncio.Event()

    turn = asyncio.create_task(app.run_turn("long task"))
    await asyncio.sleep(0)
    app._interrupt()
    conn.prompt_gate.set()
    await turn
    await asyncio.sleep(0)

    assert engine.state == "cancelled"
    assert ("cancel_session", "sess-1") in conn.calls


@pytest.mark.asyncio
async def test_main_rejects_bad_mcp_config(tmp_path, monkeypatch, capsys) -> None:
    monkeypatch.setattr(cli, "_setup_logging", lambda: None)
    bad = tmp_path / "mcp.json"
    bad.write_text(json.dumps({"not": "a list"}), encoding="utf-8")

    code = await cli.main(["acpthread", "--mcp-config", str(bad), "agent"])

    assert code == 2
    assert "failed to read mcp-config" in capsys.readouterr().err
