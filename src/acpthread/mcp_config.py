"""Load MCP server definitions passed through to session/new and session/load."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from acp.schema import EnvVariable, HttpHeader, HttpMcpServer, SseMcpServer, McpServerStdio

logger = logging.getLogger(__name__)


def _headers(entry: dict[str, Any]) -> list[HttpHeader]:
    return [
        HttpHeader(name=h["name"], value=h["value"])
        for h in entry.get("headers", [])
        if isinstance(h, dict) and "name" in h and "value" in h
    ]


def parse_mcp_servers(data: Any) -> list[Any]:
    if not isinstance(data, list):
        raise ValueError("mcp-config must be a JSON array")
    servers: list[Any] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        stype = entry.get("type", "stdio")
        name = entry.get("name") or ""
        if stype == "stdio" and entry.get("command"):
            servers.append(
                McpServerStdio(
                    name=name,
                    command=entry["command"],
                    args=entry.get("args", []),
                    env=[
                        EnvVariable(name=ev["name"], value=ev["value"])
                        for ev in entry.get("env", [])
                        if isinstance(ev, dict) and "name" in ev and "value" in ev
                    ],
                )
            )
        elif stype == "http" and entry.get("url"):
            servers.append(HttpMcpServer(type="http", name=name, url=entry["url"], headers=_headers(entry)))
        elif stype == "sse" and entry.get("url"):
            servers.append(SseMcpServer(type="sse", name=name, url=entry["url"], headers=_headers(entry)))
        else:
            logger.warning("Skipping incomplete MCP server entry name=%s type=%s", name, stype)
    return servers


def load_mcp_config(path: str | Path) -> list[Any]:
    """Read a JSON array of stdio/http/sse server entries into ACP schema objects."""

    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_mcp_servers(data)
