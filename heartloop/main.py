"""
Main application entry point - line-oriented console with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
import threading
from typing import Any

from heartloop.application import Application
from heartloop.approval.queue import ApprovalRequest, ApprovalResult
from heartloop.chat.autonomy_policy import PermissionProfile
from heartloop.chat.logging_utils import set_module_features, set_truncate_lengths
from heartloop.chat.models import (
    AgentEvent,
    AssistantTextEvent,
    ErrorEvent,
    HeartbeatCompleteEvent,
    ProviderFailoverEvent,
    ThinkingTextEvent,
    ToolCallDeniedEvent,
    ToolCallResultEvent,
    ToolCallStartEvent,
)
from heartloop.config import Configuration

HELP_TEXT = """Commands:
  /help                 show this help
  /stop                 cancel the current run
  /pause, /resume       pause or resume the current run
  /clear                clear the conversation
  /providers            list providers
  /provider <type>      switch provider
  /model <name>         use a specific model ("" for the provider default)
  /key <type> <key>     set an API key for this session
  /profile <name>       full_auto | balanced | cautious
  /task <description>   queue a task
  /tasks                list queued tasks
  /next                 run the next queued task
  /quit                 exit
While an approval is pending: y (approve), n (deny), a (always allow)."""

_APPROVAL_ANSWERS = {
    "y": ApprovalResult.APPROVED,
    "yes": ApprovalResult.APPROVED,
    "n": ApprovalResult.DENIED,
    "no": ApprovalResult.DENIED,
    "a": ApprovalResult.ALWAYS_ALLOW,
    "always": ApprovalResult.ALWAYS_ALLOW,
}


def _configure_advanced_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply per-module log levels and feature flags from the ``logging`` section.

    Levels are set on parent loggers so child loggers inherit them; feature
    flags are stored in ``heartloop.chat.logging_utils`` for runtime checks.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(level_map.get(global_level, logging.WARNING))

    module_logger_map = {
        "agent": {
            "loggers": ["heartloop.chat", "heartloop.heartbeat", "heartloop.approval"],
            "default_level": "INFO",
        },
        "providers": {
            "loggers": ["heartloop.clients", "httpx"],
            "default_level": "INFO",
        },
        "mcp": {
            "loggers": ["mcp", "heartloop.mcp_client", "heartloop.tools"],
            "default_level": "INFO",
        },
    }

    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        module_level = module_config.get(
            "level", module_logger_map.get(module_name, {}).get("default_level", global_level)
        )
        level_value = level_map.get(module_level, logging.WARNING)
        for logger_name in module_logger_map.get(module_name, {}).get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        set_module_features(module_name, module_config.get("enable_features", {}))
        if "truncate_lengths" in module_config:
            set_truncate_lengths(module_config["truncate_lengths"])


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """Re-apply logging settings whenever the runtime configuration changes."""
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            _configure_advanced_logging(logging_config)
            logging.info("🔄 Logging configuration updated in real-time")
    except Exception as e:
        logging.error(f"❌ Failed to update logging configuration: {e}")


def _print_event(event: AgentEvent) -> None:
    if isinstance(event, AssistantTextEvent):
        print(f"🤖 {event.text}")
    elif isinstance(event, ThinkingTextEvent):
        print(f"💭 {event.text}")
    elif isinstance(event, ToolCallStartEvent):
        print(f"🔧 {event.name} {json.dumps(event.params)}")
    elif isinstance(event, ToolCallResultEvent):
        mark = "✓" if event.result.success else "✗"
        print(f"   {mark} {event.name}: {event.result.as_text()[:200]}")
    elif isinstance(event, ToolCallDeniedEvent):
        print(f"🚫 {event.name} denied")
    elif isinstance(event, ErrorEvent):
        print(f"❌ {event.message}")
    elif isinstance(event, HeartbeatCompleteEvent) and event.status_note:
        print(f"♥ {event.status_note}")
    elif isinstance(event, ProviderFailoverEvent):
        print(f"⚠️  {event.from_provider} failed, answered by {event.to_provider}")


def _print_approvals(pending: list[ApprovalRequest]) -> None:
    for request in pending:
        print(f"⏳ Allow {request.tool_name} {json.dumps(request.parameters)}? [y/n/a]")


async def _handle_command(app: Application, line: str) -> bool:
    """Run one slash command. Returns False when the console should exit."""
    command, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    loop = app.agent_loop
    providers = app.provider_manager

    if command in ("quit", "exit"):
        return False
    if command == "help":
        print(HELP_TEXT)
    elif command == "stop":
        loop.stop()
    elif command == "pause":
        loop.pause()
    elif command == "resume":
        loop.resume()
    elif command == "clear":
        loop.clear_history()
        print("🧹 Conversation cleared")
    elif command == "providers":
        active = providers.active_type()
        for info in providers.available_providers():
            marker = "*" if info.type == active else " "
            key = "key" if info.has_key else "no key"
            print(f" {marker} {info.type:<11} {info.display_name} ({info.default_model}, {key})")
    elif command == "provider":
        if providers.switch_provider(arg):
            print(f"✓ Provider: {arg}")
        else:
            print(f"❌ Unknown provider '{arg}'")
    elif command == "model":
        app.config.active_model = arg.strip("\"'")
        print(f"✓ Model: {app.config.active_model or 'provider default'}")
    elif command == "key":
        provider_type, _, api_key = arg.partition(" ")
        if not api_key:
            print("Usage: /key <type> <key>")
        else:
            providers.set_api_key(provider_type, api_key.strip())
            print(f"✓ Key set for {provider_type}")
    elif command == "profile":
        try:
            profile = PermissionProfile.parse(arg)
            app.config.set_runtime_value(["autonomy", "permission_profile"], profile.value)
            app.apply_autonomy_config()
            print(f"✓ Profile: {app.autonomy_policy.profile.value}")
        except ValueError as e:
            print(f"❌ {e}")
    elif command == "task":
        task = app.task_queue.enqueue(arg)
        print(f"✓ Queued {task.id[:8]}")
    elif command == "tasks":
        for task in app.task_queue.tasks:
            print(f"  {task.id[:8]} [{task.status.value}] ({task.priority.value}) {task.description}")
    elif command == "next":
        task = app.submit_next_task()
        if task is None:
            print("No pending tasks")
        else:
            print(f"▶ Running {task.id[:8]}: {task.description}")
    else:
        print(f"Unknown command '/{command}', try /help")
    return True


def _start_stdin_reader(queue: asyncio.Queue[str | None]) -> None:
    """Feed stdin lines into ``queue`` from a daemon thread; None marks EOF."""
    loop = asyncio.get_running_loop()

    def read() -> None:
        # The loop may already be closed when stdin ends during shutdown
        with contextlib.suppress(RuntimeError):
            for raw in sys.stdin:
                loop.call_soon_threadsafe(queue.put_nowait, raw)
            loop.call_soon_threadsafe(queue.put_nowait, None)

    threading.Thread(target=read, name="stdin-reader", daemon=True).start()


async def _console(app: Application) -> None:
    print("Heartloop - type /help for commands")
    lines: asyncio.Queue[str | None] = asyncio.Queue()
    _start_stdin_reader(lines)
    while True:
        line = await lines.get()
        if line is None:
            return
        line = line.strip()
        if not line:
            continue

        pending = app.approval_queue.pending()
        if pending and line.lower() in _APPROVAL_ANSWERS:
            app.approval_queue.respond(pending[0].id, _APPROVAL_ANSWERS[line.lower()])
            continue

        if line.startswith("/"):
            if not await _handle_command(app, line):
                return
            continue

        app.agent_loop.submit_message(line)


# Configure logging for the application
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


async def main() -> None:
    """Main entry point - console interface with graceful shutdown handling."""
    config = Configuration()

    logging_config = config.get_logging_config()
    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))
    _configure_advanced_logging(logging_config)
    config.subscribe_to_changes(_on_logging_config_change)

    app = Application(config)
    app.agent_loop.add_event_listener(_print_event)
    app.approval_queue.add_listener(_print_approvals)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    try:
        await config.start_watching()
        await app.start()

        console_task = asyncio.create_task(_console(app))
        shutdown_task = asyncio.create_task(shutdown_event.wait())
        done, pending = await asyncio.wait(
            [console_task, shutdown_task], return_when=asyncio.FIRST_COMPLETED
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if console_task in done:
            exception = console_task.exception()
            if exception is not None:
                raise exception
    except KeyboardInterrupt:
        logging.info("Keyboard interrupt received, shutting down...")
    except Exception as e:
        logging.error(f"Application error: {e}")
        raise
    finally:
        await app.shutdown()
        await config.stop_watching()
        logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
