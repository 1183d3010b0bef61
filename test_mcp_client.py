#!/usr/bin/env python3
"""
Test script for MCP server connection handling and application startup with
unreachable servers.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import tempfile

from mcp import McpError

from heartloop.application import Application
from heartloop.config import Configuration
from heartloop.heartbeat.manager import HeartbeatState
from heartloop.mcp_client import MCPClient

PACKAGE_CONFIG = os.path.join(os.path.dirname(__file__), "heartloop", "config.yaml")
FAST_RETRY = {
    "max_reconnect_attempts": 2,
    "initial_reconnect_delay": 0.001,
    "max_reconnect_delay": 0.002,
    "connection_timeout": 1.0,
    "ping_timeout": 1.0,
}


async def test_missing_command_fails_after_retries():
    print("🧪 Testing MCP connection retries...")
    client = MCPClient("ghost", {"command": "definitely-not-an-installed-command"}, FAST_RETRY)
    try:
        await client.connect()
        assert False, "Should have raised ValueError"
    except ValueError as e:
        assert "not found in PATH" in str(e)
    assert not client.is_connected
    assert await client.ping() is False
    await client.close()
    print("✅ Gave up after the configured attempts")


async def test_calls_without_session_raise_mcp_error():
    client = MCPClient("idle", {"command": "npx"})
    for call in (client.list_tools(), client.call_tool("read_file", {})):
        try:
            await call
            assert False, "Should have raised McpError"
        except McpError as e:
            assert e.error.message == "Client idle not connected"


async def test_application_starts_without_reachable_servers():
    print("🧪 Testing application startup...")
    with tempfile.TemporaryDirectory() as tmp:
        servers_path = os.path.join(tmp, "servers.json")
        with open(servers_path, "w") as f:
            json.dump(
                {
                    "mcpServers": {
                        "ghost": {"enabled": True, "command": "definitely-not-an-installed-command"},
                        "off": {"enabled": False, "command": "npx"},
                    }
                },
                f,
            )
        config_path = os.path.join(tmp, "config.yaml")
        shutil.copy(PACKAGE_CONFIG, config_path)
        config = Configuration(config_path=config_path, load_environment=False)
        config.set_runtime_value(["mcp", "servers_config"], servers_path)
        config.set_runtime_value(["mcp", "connection"], FAST_RETRY)
        config.set_runtime_value(["autonomy", "overrides"], {"sms.send": "deny"})

        app = Application(config)
        await app.start()

        assert app.mcp_clients == []
        assert app.catalog.names() == {"heartbeat.context", "skill.read"}
        assert [s.name for s in app.skill_registry.skills] == ["Daily Briefing"]
        assert app.heartbeat_manager.state is HeartbeatState.ACTIVE
        assert app.autonomy_policy.get_policy("sms.send").value == "deny"

        await app.shutdown()
        assert app.heartbeat_manager.state is HeartbeatState.STOPPED
    print("✅ Unreachable servers are skipped")


if __name__ == "__main__":
    asyncio.run(test_missing_command_fails_after_retries())
    asyncio.run(test_calls_without_session_raise_mcp_error())
    asyncio.run(test_application_starts_without_reachable_servers())
    print("\n🎉 All MCP client tests passed!")
