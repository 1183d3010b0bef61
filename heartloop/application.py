"""
Application wiring.

Builds the object graph from a Configuration: tool catalog (built-in tools plus
tools sourced from enabled MCP servers), skills, provider selector, autonomy policy,
approval queue, tool executor, agent loop and heartbeat scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from heartloop.approval.queue import ApprovalPolicyManager, ApprovalQueue
from heartloop.chat.agent_loop import AgentLoop
from heartloop.chat.autonomy_policy import AutonomyPolicy
from heartloop.chat.models import AgentState
from heartloop.chat.system_prompt import build_system_prompt
from heartloop.chat.task_queue import AgentTask, TaskQueue, TaskStatus
from heartloop.chat.tool_executor import ToolExecutor
from heartloop.clients.credentials import CredentialStore
from heartloop.clients.provider_manager import ProviderManager
from heartloop.config import Configuration
from heartloop.heartbeat.manager import HeartbeatManager
from heartloop.mcp_client import MCPClient
from heartloop.skills import SkillRegistry
from heartloop.tools.catalog import ToolCatalog
from heartloop.tools.heartbeat_context import HeartbeatContextTool
from heartloop.tools.skill_read import SkillReadTool

logger = logging.getLogger(__name__)

MAX_CONCURRENT_CONNECTIONS = 5


class Application:
    def __init__(
        self,
        config: Configuration,
        provider_manager: ProviderManager | None = None,
        credentials: CredentialStore | None = None,
    ) -> None:
        self.config = config
        self.catalog = ToolCatalog()
        self.provider_manager = provider_manager or ProviderManager(
            config, credentials or CredentialStore()
        )
        self.task_queue = TaskQueue()
        self.skill_registry = SkillRegistry()
        self.mcp_clients: list[MCPClient] = []

        autonomy = config.get_autonomy_config()
        self.autonomy_policy = AutonomyPolicy(autonomy["permission_profile"])
        self.approval_queue = ApprovalQueue()
        self.tool_executor = ToolExecutor(
            self.catalog,
            self.autonomy_policy,
            self.approval_queue,
            ApprovalPolicyManager(self.autonomy_policy),
            approval_timeout=autonomy["approval_timeout_seconds"],
        )

        heartbeat = config.get_heartbeat_config()
        self.heartbeat_manager = HeartbeatManager(
            enabled=heartbeat["enabled"], always_poll=heartbeat["always_poll"]
        )
        self.agent_loop = AgentLoop(
            self.provider_manager,
            self.catalog,
            self.tool_executor,
            system_prompt=lambda: build_system_prompt(
                self.catalog, config.get_agent_config(), self.skill_registry.build_prompt()
            ),
            max_iterations=config.get_max_iterations(),
            max_tokens=config.get_max_tokens(),
            heartbeat_manager=self.heartbeat_manager,
        )
        self.heartbeat_manager.attach(self.agent_loop)
        self.catalog.register(HeartbeatContextTool(self.heartbeat_manager))

        config.subscribe_to_changes(self._on_config_change)

    async def start(self) -> None:
        """Connect MCP servers, register their tools, apply policies, start the heartbeat."""
        logger.info("→ Application: starting")
        self._load_skills()
        await self._connect_mcp_servers()
        self.apply_autonomy_config()
        self.heartbeat_manager.start()
        logger.info(f"← Application: ready - {len(self.catalog)} tools")

    async def shutdown(self) -> None:
        logger.info("→ Application: shutting down")
        self.heartbeat_manager.stop()
        self.agent_loop.stop()
        self.config.unsubscribe_from_changes(self._on_config_change)
        for client in self.mcp_clients:
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing MCP client '{client.name}': {e}")
        await self.provider_manager.close()
        logger.info("← Application: shutdown complete")

    def apply_autonomy_config(self) -> None:
        """Apply the configured profile over the current catalog, then per-tool overrides."""
        autonomy = self.config.get_autonomy_config()
        self.autonomy_policy.apply_profile(autonomy["permission_profile"], self.catalog.all())
        for tool_name, policy in autonomy["overrides"].items():
            self.autonomy_policy.set_policy(tool_name, policy)
        logger.info(
            f"Autonomy profile '{self.autonomy_policy.profile.value}' applied "
            f"with {len(autonomy['overrides'])} overrides"
        )

    def submit_next_task(self) -> AgentTask | None:
        """
        Start the next queued task as a user message without waiting for it.

        The task's status is recorded once the run finishes: COMPLETED, or
        FAILED when the run errored or was superseded. A paused run leaves the
        task in progress.
        """
        task = self.task_queue.dequeue()
        if task is None:
            return None
        run = self.agent_loop.submit_message(task.description)
        run.add_done_callback(lambda finished: self._record_task_outcome(task, finished))
        logger.info(f"Task {task.id[:8]} started: {task.description}")
        return task

    async def run_next_task(self) -> AgentTask | None:
        """Start the next queued task and wait until its run is over."""
        task = self.submit_next_task()
        if task is None:
            return None
        run = self.agent_loop.current_task
        if run is not None:
            await asyncio.wait([run])
        return task

    def _record_task_outcome(self, task: AgentTask, run: asyncio.Task[None]) -> None:
        if run.cancelled() or self.agent_loop.current_task is not run:
            status = TaskStatus.FAILED
        elif self.agent_loop.state is AgentState.ERROR:
            status = TaskStatus.FAILED
        elif self.agent_loop.state is AgentState.PAUSED:
            return
        else:
            status = TaskStatus.COMPLETED
        self.task_queue.update_status(task.id, status)
        logger.info(f"Task {task.id[:8]} {status.value}")

    def _load_skills(self) -> None:
        for directory in self.config.get_skill_directories():
            self.skill_registry.load_directory(directory)
        if len(self.skill_registry):
            self.catalog.register(SkillReadTool(self.skill_registry))

    async def _connect_mcp_servers(self) -> None:
        servers_config = self.config.load_config(self.config.get_mcp_servers_path())
        connection_config = self.config.get_mcp_connection_config()

        clients: list[MCPClient] = []
        for name, server_config in servers_config.get("mcpServers", {}).items():
            if server_config.get("enabled", False):
                clients.append(MCPClient(name, server_config, connection_config))
            else:
                logger.info(f"Skipping disabled server: {name}")
        if not clients:
            return

        semaphore = asyncio.Semaphore(MAX_CONCURRENT_CONNECTIONS)

        async def connect(client: MCPClient) -> None:
            async with semaphore:
                await client.connect()

        results = await asyncio.gather(*(connect(c) for c in clients), return_exceptions=True)
        for client, result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.warning(f"Client '{client.name}' failed to connect: {result}")
                continue
            self.mcp_clients.append(client)
            try:
                await self.catalog.register_mcp_client(client)
            except Exception as e:
                logger.warning(f"Tools of '{client.name}' unavailable: {e}")

        logger.info(
            f"Connected to {len(self.mcp_clients)} out of {len(clients)} MCP clients"
        )

    def _on_config_change(self, new_config: dict[str, Any]) -> None:
        try:
            heartbeat = self.config.get_heartbeat_config()
            self.heartbeat_manager.enabled = heartbeat["enabled"]
            self.heartbeat_manager.always_poll = heartbeat["always_poll"]
            self.agent_loop.max_iterations = self.config.get_max_iterations()
            self.agent_loop.max_tokens = self.config.get_max_tokens()
        except ValueError as e:
            logger.error(f"Ignoring invalid configuration change: {e}")
