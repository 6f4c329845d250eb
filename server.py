#!/usr/bin/env python3
"""
Desktop Sandbox MCP Server - Remote Desktop Control for Agents

Provides tools to drive disposable desktop sandboxes over VNC:
- desktop_session: create, resume, list, inspect and close sessions
- desktop_action: single input actions or multi-step natural-language instructions
- desktop_screenshot: current screen as an image
"""
import logging
import sys
from typing import Optional

import anyio
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import ImageContent, TextContent, Tool

from desktop_sandbox import (
    ActionType,
    DesktopAction,
    InstructionContext,
    ManagerConfig,
    ResumeConfig,
    SessionConfig,
    SessionManager,
    SessionNotFound,
)
from desktop_sandbox.events import event_to_dict

# Configure logging to stderr only (to avoid interfering with MCP stdio protocol)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("desktop-sandbox-mcp")

SANDBOX_FIELDS = ("type", "platform", "memory_mb", "cpus", "enable_gpu", "enable_network",
                  "config_path", "startup_script")


class LoggingBroadcaster:
    """Session event sink that writes a one-line summary of every event to the log."""

    def broadcast(self, event) -> None:
        data = event_to_dict(event)
        # Screenshots are large base64 blobs
        for key in ("screenshot", "session"):
            data.pop(key, None)
        if "result" in data and isinstance(data["result"], dict):
            data["result"].pop("screenshot", None)
        logger.info(f"Event {event.type} [{event.session_id[:8]}]: {data}")


def _session_summary(session) -> str:
    vnc = session.vnc
    endpoint = f"{vnc.host}:{vnc.port}" if vnc else "-"
    parts = [
        f"  {session.id}  ({session.name})",
        f"status={session.status.value}",
        f"sandbox={session.sandbox.type.value}",
        f"vnc={endpoint}",
        f"viewport={session.viewport.width}x{session.viewport.height}",
    ]
    if session.error:
        parts.append(f"error={session.error}")
    return "  ".join(parts)


class DesktopSessionToolHandler:
    """Handler for desktop session lifecycle."""

    def __init__(self, manager: SessionManager):
        self.manager = manager

    async def create(self, name: Optional[str] = None, sandbox_type: Optional[str] = None,
                     computer_use_provider: Optional[str] = None,
                     screenshot_interval: Optional[float] = None,
                     password: Optional[str] = None, **kwargs) -> dict:
        sandbox = {key: kwargs[key] for key in SANDBOX_FIELDS if kwargs.get(key) is not None}
        if sandbox_type:
            sandbox["type"] = sandbox_type
        vnc = {"password": password} if password else None
        config = SessionConfig(
            name=name,
            sandbox=sandbox or None,
            vnc=vnc,
            computer_use_provider=computer_use_provider,
            screenshot_interval=screenshot_interval,
        )
        session = await self.manager.create_session(config)
        return session.to_dict()

    async def resume(self, name: Optional[str] = None, host: Optional[str] = None,
                     port: Optional[int] = None, password: Optional[str] = None,
                     sandbox_type: Optional[str] = None,
                     computer_use_provider: Optional[str] = None,
                     screenshot_interval: Optional[float] = None, **kwargs) -> dict:
        config = ResumeConfig(
            name=name,
            host=host,
            port=port,
            password=password,
            sandbox_type=sandbox_type,
            computer_use_provider=computer_use_provider,
            screenshot_interval=screenshot_interval,
        )
        session = await self.manager.resume_session(config)
        return session.to_dict()

    async def list(self, **kwargs):
        return self.manager.get_sessions()

    async def get(self, session_id: str, **kwargs):
        session = self.manager.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def close(self, session_id: str, **kwargs) -> None:
        await self.manager.close_session(session_id)


class DesktopActionToolHandler:
    """Handler for input actions and instructions."""

    def __init__(self, manager: SessionManager):
        self.manager = manager

    async def run_action(self, session_id: str, action: str, **kwargs):
        fields = {key: value for key, value in kwargs.items() if value is not None}
        desktop_action = DesktopAction.from_dict({"type": action, **fields})
        return await self.manager.execute_action(session_id, desktop_action)

    async def run_instruction(self, session_id: str, instruction: str,
                              max_steps: Optional[int] = None, **kwargs):
        context = InstructionContext(max_steps=max_steps or 10)
        return await self.manager.execute_instruction(session_id, instruction, context)

    async def screenshot(self, session_id: str, **kwargs) -> str:
        return await self.manager.capture_screenshot(session_id)


async def main():
    """Main entry point for the MCP server."""
    logger.info("Starting Desktop Sandbox MCP Server")

    config = ManagerConfig.from_env()
    async with SessionManager(config, broadcaster=LoggingBroadcaster()) as manager:
        session_handler = DesktopSessionToolHandler(manager)
        action_handler = DesktopActionToolHandler(manager)
        server = Server("desktop-sandbox")

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            """List available tools."""
            return [
                Tool(
                    name="desktop_session",
                    description="""Manage desktop sandbox sessions.

Actions:
- create: Launch (or reuse) a sandbox and connect to its desktop (returns session)
- resume: Connect to an already running sandbox (optional: host, port; discovered otherwise)
- list: List all sessions
- get: Get details for a session (requires session_id)
- close: Close a session and tear down its sandbox (requires session_id)""",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "action": {
                                "type": "string",
                                "enum": ["create", "resume", "list", "get", "close"],
                                "description": "The action to perform",
                            },
                            "session_id": {
                                "type": "string",
                                "description": "Session ID (required for 'get', 'close')",
                            },
                            "name": {
                                "type": "string",
                                "description": "Human-readable session name (for 'create', 'resume')",
                            },
                            "sandbox_type": {
                                "type": "string",
                                "enum": ["windows-sandbox", "hyperv", "virtualbox", "tart"],
                                "description": "Sandbox backend (for 'create', 'resume')",
                            },
                            "platform": {
                                "type": "string",
                                "enum": ["windows", "macos", "linux"],
                                "description": "Guest operating system (for 'create')",
                            },
                            "memory_mb": {
                                "type": "integer",
                                "description": "Sandbox memory in MB (for 'create')",
                            },
                            "cpus": {
                                "type": "integer",
                                "description": "Number of CPU cores (for 'create')",
                            },
                            "enable_gpu": {
                                "type": "boolean",
                                "description": "Enable virtual GPU (for 'create')",
                            },
                            "enable_network": {
                                "type": "boolean",
                                "description": "Enable networking (for 'create')",
                            },
                            "config_path": {
                                "type": "string",
                                "description": "VM name, or .wsb manifest for Windows Sandbox (for 'create')",
                            },
                            "host": {
                                "type": "string",
                                "description": "VNC host (for 'resume')",
                            },
                            "port": {
                                "type": "integer",
                                "description": "VNC port (for 'resume', default: 5900)",
                            },
                            "password": {
                                "type": "string",
                                "description": "VNC password (for 'create', 'resume')",
                            },
                            "computer_use_provider": {
                                "type": "string",
                                "description": "Computer Use provider name for instructions",
                            },
                            "screenshot_interval": {
                                "type": "number",
                                "description": "Seconds between background screenshots, 0 disables (default: 1)",
                            },
                        },
                        "required": ["action"],
                    },
                ),
                Tool(
                    name="desktop_action",
                    description="""Control a desktop session.

Actions:
- click, double_click, right_click, move: Pointer at x, y
- drag: Drag from x, y to end_x, end_y
- scroll: Scroll direction (up/down/left/right) by amount, optionally at x, y
- type: Type text
- key: Press a single key (e.g. 'Enter', 'F5')
- hotkey: Press a key combination (keys, e.g. ['ctrl', 'c'])
- wait: Pause for duration milliseconds
- screenshot: Capture without input
- instruction: Let the Computer Use model carry out a natural-language instruction""",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "action": {
                                "type": "string",
                                "enum": [t.value for t in ActionType] + ["instruction"],
                                "description": "The action to perform",
                            },
                            "session_id": {
                                "type": "string",
                                "description": "Session ID",
                            },
                            "x": {"type": "integer", "description": "X coordinate in pixels"},
                            "y": {"type": "integer", "description": "Y coordinate in pixels"},
                            "end_x": {"type": "integer", "description": "Drag end X (for 'drag')"},
                            "end_y": {"type": "integer", "description": "Drag end Y (for 'drag')"},
                            "text": {"type": "string", "description": "Text to type (for 'type')"},
                            "key": {"type": "string", "description": "Key name (for 'key')"},
                            "keys": {
                                "type": "array",
                                "items": {"type": "string"},
                                "description": "Key combination (for 'hotkey')",
                            },
                            "direction": {
                                "type": "string",
                                "enum": ["up", "down", "left", "right"],
                                "description": "Scroll direction (for 'scroll')",
                            },
                            "amount": {
                                "type": "integer",
                                "description": "Scroll clicks (for 'scroll', default: 3)",
                            },
                            "duration": {
                                "type": "integer",
                                "description": "Milliseconds to wait (for 'wait', default: 1000)",
                            },
                            "instruction": {
                                "type": "string",
                                "description": "Natural-language task (for 'instruction')",
                            },
                            "max_steps": {
                                "type": "integer",
                                "description": "Step limit (for 'instruction', default: 10)",
                            },
                        },
                        "required": ["action", "session_id"],
                    },
                ),
                Tool(
                    name="desktop_screenshot",
                    description="Capture the current screen of a desktop session as a JPEG image.",
                    inputSchema={
                        "type": "object",
                        "properties": {
                            "session_id": {
                                "type": "string",
                                "description": "Session ID",
                            },
                        },
                        "required": ["session_id"],
                    },
                ),
            ]

        @server.call_tool()
        async def call_tool(name: str, arguments: dict) -> list[TextContent | ImageContent]:
            """Handle tool calls."""
            logger.info(f"Tool '{name}' called with args: {_loggable(arguments)}")

            try:
                if name == "desktop_session":
                    return await handle_session_tool(session_handler, arguments)
                elif name == "desktop_action":
                    return await handle_action_tool(action_handler, arguments)
                elif name == "desktop_screenshot":
                    data = await action_handler.screenshot(**arguments)
                    return [ImageContent(type="image", data=data, mimeType="image/jpeg")]
                else:
                    return [TextContent(type="text", text=f"Unknown tool: {name}")]

            except Exception as exception:
                logger.error(f"Tool execution error: {exception}", exc_info=True)
                return [
                    TextContent(
                        type="text",
                        text=f"Error executing {name}: {str(exception)}",
                    )
                ]

        async def handle_session_tool(handler, arguments: dict) -> list[TextContent]:
            """Handle desktop_session actions."""
            arguments = dict(arguments)
            action = arguments.pop("action", None)
            if action == "create":
                session = await handler.create(**arguments)
                return [TextContent(type="text", text=_format_created(session))]
            elif action == "resume":
                session = await handler.resume(**arguments)
                return [TextContent(type="text", text=_format_created(session))]
            elif action == "list":
                sessions = await handler.list(**arguments)
                if not sessions:
                    return [TextContent(type="text", text="No desktop sessions")]
                lines = [_session_summary(s) for s in sessions]
                return [TextContent(type="text", text=f"Sessions ({len(sessions)}):\n" + "\n".join(lines))]
            elif action == "get":
                session = await handler.get(**arguments)
                info = session.to_dict()
                lines = [f"{k}: {v}" for k, v in info.items() if v is not None]
                return [TextContent(type="text", text="\n".join(lines))]
            elif action == "close":
                await handler.close(**arguments)
                return [TextContent(type="text", text=f"Session '{arguments.get('session_id')}' closed")]
            else:
                return [TextContent(type="text", text=f"Unknown desktop_session action: {action}")]

        async def handle_action_tool(handler, arguments: dict) -> list[TextContent | ImageContent]:
            """Handle desktop_action actions."""
            arguments = dict(arguments)
            action = arguments.pop("action", None)
            if not action:
                return [TextContent(type="text", text="Missing 'action' parameter")]

            if action == "instruction":
                if not arguments.get("instruction"):
                    return [TextContent(type="text", text="Missing 'instruction' parameter")]
                result = await handler.run_instruction(**arguments)
                if result.success:
                    text = f"Instruction completed in {result.steps} steps: {result.result or ''}".rstrip()
                else:
                    text = f"Instruction failed after {result.steps} steps: {result.error}"
                if result.actions:
                    text += "\nActions: " + ", ".join(a.type.value for a in result.actions)
                content: list[TextContent | ImageContent] = [TextContent(type="text", text=text)]
                if result.final_screenshot:
                    content.append(ImageContent(type="image", data=result.final_screenshot, mimeType="image/jpeg"))
                return content

            arguments.pop("instruction", None)
            arguments.pop("max_steps", None)
            result = await handler.run_action(action=action, **arguments)
            if not result.success:
                return [TextContent(type="text", text=f"Action {action} failed: {result.error}")]
            content = [TextContent(type="text", text=f"Action {action} completed in {result.duration}ms")]
            if result.screenshot:
                content.append(ImageContent(type="image", data=result.screenshot, mimeType="image/jpeg"))
            return content

        # Run the server
        try:
            # Run MCP server on stdio
            async with stdio_server() as streams:
                logger.info("MCP server running on stdio")
                await server.run(
                    streams[0],
                    streams[1],
                    server.create_initialization_options(),
                )
        except KeyboardInterrupt:
            logger.info("Server interrupted by user")
        finally:
            logger.info("Closing all desktop sessions...")


def _format_created(session: dict) -> str:
    vnc = session.get("vnc") or {}
    viewport = session.get("viewport") or {}
    lines = [
        f"Desktop session ready with ID: {session['id']}",
        f"Name: {session['name']}",
        f"Status: {session['status']}",
        f"Sandbox: {session['sandbox']['type']}",
    ]
    if vnc:
        lines.append(f"VNC: {vnc['host']}:{vnc['port']}")
    if viewport:
        lines.append(f"Viewport: {viewport['width']}x{viewport['height']}")
    return "\n".join(lines)


def _loggable(arguments: dict) -> dict:
    return {k: ("***" if k == "password" else v) for k, v in arguments.items()}


def run():
    """Sync entry point for CLI."""
    anyio.run(main)


if __name__ == "__main__":
    run()
