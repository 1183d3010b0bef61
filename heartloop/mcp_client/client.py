"""
Stdio MCP client used to source external tools for the agent.

Each configured server is spawned as a subprocess and spoken to through the
official MCP SDK. Only the tool surface is used by the agent: tools are
listed once at startup and registered in the catalog as ``<server>.<tool>``.

Connection behavior is configured from the ``mcp.connection`` YAML section:
- max_reconnect_attempts: Maximum number of connection attempts
- initial_reconnect_delay: Delay before the first retry (doubles each attempt)
- max_reconnect_delay: Upper bound for the retry delay
- connection_timeout: Timeout for the initialize handshake
- ping_timeout: Timeout for health checks
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client

from heartloop import __version__

logger = logging.getLogger(__name__)


def _not_connected(name: str) -> McpError:
    return McpError(
        error=types.ErrorData(
            code=types.INTERNAL_ERROR,
            message=f"Client {name} not connected",
        )
    )


class MCPClient:
    """Connection to a single MCP server over stdio."""

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        connection_config: dict[str, Any] | None = None,
    ) -> None:
        """
        Args:
            name: Server name; becomes the namespace of its tools
            config: Server launch configuration (command, args, env)
            connection_config: Retry and timeout parameters
        """
        self.name: str = name
        self.config: dict[str, Any] = config
        self.session: ClientSession | None = None
        self.exit_stack: AsyncExitStack = AsyncExitStack()
        self._cleanup_lock: asyncio.Lock = asyncio.Lock()
        self._is_connected: bool = False

        conn = connection_config or {}
        self._max_attempts: int = conn.get("max_reconnect_attempts", 5)
        self._initial_delay: float = conn.get("initial_reconnect_delay", 1.0)
        self._max_delay: float = conn.get("max_reconnect_delay", 30.0)
        self._connection_timeout: float = conn.get("connection_timeout", 30.0)
        self._ping_timeout: float = conn.get("ping_timeout", 10.0)

        logger.debug(
            f"MCP client '{name}' configured with: "
            f"max_attempts={self._max_attempts}, "
            f"initial_delay={self._initial_delay}s, "
            f"max_delay={self._max_delay}s, "
            f"connection_timeout={self._connection_timeout}s"
        )

    def _resolve_command(self) -> str | None:
        """Resolve the configured command to an executable path, or None."""
        command = self.config.get("command")
        if not command:
            return None
        if os.path.isabs(command):
            return command if os.path.exists(command) else None
        return shutil.which(command)

    async def connect(self) -> None:
        """
        Connect to the server, retrying with exponential backoff.

        Raises:
            Exception: The last connection error once all attempts are used up
        """
        delay = self._initial_delay
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._attempt_connection()
                self._is_connected = True
                return
            except Exception as e:
                self._is_connected = False
                # A half-opened transport must not leak into the next attempt
                await self.exit_stack.aclose()
                self.exit_stack = AsyncExitStack()
                self.session = None

                if attempt >= self._max_attempts:
                    logger.error(
                        f"Failed to connect to {self.name} after "
                        f"{self._max_attempts} attempts: {e}"
                    )
                    raise

                logger.warning(
                    f"Connection attempt {attempt} failed for {self.name}: {e}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_delay)

    async def _attempt_connection(self) -> None:
        command = self._resolve_command()
        if not command:
            raise ValueError(
                f"Command '{self.config.get('command')}' not found in PATH"
            )

        server_params = StdioServerParameters(
            command=command,
            args=self.config.get("args", []),
            env={**os.environ, **self.config["env"]} if self.config.get("env") else None,
        )

        read_stream, write_stream = await self.exit_stack.enter_async_context(
            stdio_client(server_params)
        )
        client_info = types.Implementation(name=self.name, version=__version__)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )
        await asyncio.wait_for(
            self.session.initialize(), timeout=self._connection_timeout
        )

        logger.info(f"MCP client '{self.name}' connected successfully")

    async def ping(self) -> bool:
        """Check the connection with a lightweight list_tools round trip."""
        if not self.session or not self._is_connected:
            return False

        try:
            await asyncio.wait_for(
                self.session.list_tools(), timeout=self._ping_timeout
            )
            return True
        except Exception as e:
            logger.warning(f"Ping failed for {self.name}: {e}")
            self._is_connected = False
            return False

    async def list_tools(self) -> list[types.Tool]:
        if not self.session:
            raise _not_connected(self.name)

        try:
            result = await self.session.list_tools()
            return result.tools
        except McpError as e:
            logger.error(f"MCP error listing tools from {self.name}: {e.error.message}")
            raise
        except Exception as e:
            logger.error(f"Error listing tools from {self.name}: {e}")
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Failed to list tools: {e!s}",
                )
            ) from e

    async def call_tool(
        self, name: str, arguments: dict[str, Any] | None = None
    ) -> types.CallToolResult:
        if not self.session:
            raise _not_connected(self.name)

        try:
            logger.info(f"→ MCP[{self.name}]: calling tool '{name}'")
            result = await self.session.call_tool(name, arguments)
            logger.info(f"← MCP[{self.name}]: tool '{name}' returned")
            return result
        except McpError as e:
            logger.error(f"MCP error calling tool '{name}': {e.error.message}")
            raise
        except Exception as e:
            logger.error(f"Error calling tool '{name}': {e}")
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Tool call failed: {e!s}",
                )
            ) from e

    async def close(self) -> None:
        """Close the connection and terminate the server process."""
        async with self._cleanup_lock:
            try:
                self._is_connected = False
                await self.exit_stack.aclose()
                self.session = None
                logger.info(f"MCP client '{self.name}' disconnected")
            except Exception as e:
                logger.error(f"Error during cleanup of client {self.name}: {e}")

    @property
    def is_connected(self) -> bool:
        return self._is_connected
