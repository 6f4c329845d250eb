"""
Desktop Sandbox MCP Server Tests

Runs server.py over stdio and exercises the tools it exposes:
- desktop_session: lifecycle
- desktop_action: input actions
- desktop_screenshot: screen capture

The desktop itself is the in-process fake VNC server.
"""
import os
import sys
from pathlib import Path
from typing import Any

import pytest
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from fake_vnc import FakeVNCServer


class MCPTestClient:
    """Test client that manages MCP session lifecycle."""

    def __init__(self, env: dict = None):
        self.env = env
        self.session = None
        self._read = None
        self._write = None
        self._stdio_cm = None
        self._session_cm = None

    async def connect(self):
        """Connect to MCP server."""
        server_path = Path(__file__).parent.parent / "server.py"
        server_params = StdioServerParameters(
            command=sys.executable,
            args=["-u", str(server_path)],
            env={**os.environ, **(self.env or {})},
        )

        self._stdio_cm = stdio_client(server_params)
        self._read, self._write = await self._stdio_cm.__aenter__()

        self._session_cm = ClientSession(self._read, self._write)
        self.session = await self._session_cm.__aenter__()
        await self.session.initialize()

    async def disconnect(self):
        """Disconnect from MCP server."""
        if self._session_cm:
            try:
                await self._session_cm.__aexit__(None, None, None)
            except Exception:
                pass
        if self._stdio_cm:
            try:
                await self._stdio_cm.__aexit__(None, None, None)
            except Exception:
                pass

    async def call_session(self, action: str, **kwargs) -> Any:
        return await self.session.call_tool("desktop_session", {"action": action, **kwargs})

    async def call_action(self, session_id: str, action: str, **kwargs) -> Any:
        return await self.session.call_tool(
            "desktop_action", {"action": action, "session_id": session_id, **kwargs}
        )


def _session_id(text: str) -> str:
    first_line = text.splitlines()[0]
    return first_line.rsplit(" ", 1)[-1]


@pytest.mark.asyncio
async def test_list_tools(tmp_path):
    """Test that server lists all tools correctly."""
    client = MCPTestClient({"DESKTOP_SANDBOX_SESSIONS_ROOT": str(tmp_path)})
    try:
        await client.connect()
        result = await client.session.list_tools()
        tool_names = [t.name for t in result.tools]
        assert tool_names == ["desktop_session", "desktop_action", "desktop_screenshot"]
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_list_sessions_empty(tmp_path):
    client = MCPTestClient({"DESKTOP_SANDBOX_SESSIONS_ROOT": str(tmp_path)})
    try:
        await client.connect()
        result = await client.call_session("list")
        assert result.content[0].text == "No desktop sessions"

        result = await client.call_session("get", session_id="missing")
        assert "Session not found: missing" in result.content[0].text
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_resume_act_and_close(tmp_path):
    async with FakeVNCServer() as server:
        client = MCPTestClient({
            "DESKTOP_SANDBOX_SESSIONS_ROOT": str(tmp_path),
            "DESKTOP_SANDBOX_SCREENSHOT_INTERVAL": "0",
        })
        try:
            await client.connect()
            result = await client.call_session(
                "resume", host="127.0.0.1", port=server.port, password=server.password
            )
            text = result.content[0].text
            assert text.startswith("Desktop session ready with ID: ")
            assert "Status: active" in text
            session_id = _session_id(text)

            result = await client.call_action(session_id, "click", x=4, y=5)
            assert "Action click completed" in result.content[0].text
            assert result.content[1].mimeType == "image/jpeg"
            assert (1, 4, 5) in server.pointer_events

            result = await client.session.call_tool("desktop_screenshot", {"session_id": session_id})
            assert result.content[0].type == "image"
            assert result.content[0].data

            result = await client.call_session("list")
            assert session_id in result.content[0].text

            result = await client.call_session("close", session_id=session_id)
            assert "closed" in result.content[0].text
        finally:
            await client.disconnect()
