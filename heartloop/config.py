"""Configuration management for the agent runtime."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import logging
import os
import sys
import time
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(__file__)

PROVIDER_TYPES = ("anthropic", "openai", "gemini", "openrouter")
DEFAULT_PROVIDER_TYPE = "anthropic"
DEFAULT_MAX_ITERATIONS = 40


class Configuration:
    """Event-driven configuration manager with observer pattern.

    ``config.yaml`` holds the shipped defaults. ``runtime_config.yaml`` is
    created from them on first run and is the persisted, user-editable copy;
    values missing from it fall back to the defaults.
    """

    def __init__(
        self,
        config_path: str | None = None,
        runtime_config_path: str | None = None,
        load_environment: bool = True,
    ) -> None:
        if load_environment:
            self.load_env()
        self._config_path = config_path or os.path.join(_PACKAGE_DIR, "config.yaml")
        self._default_config = self._load_yaml_config()
        self._runtime_config_path = runtime_config_path or os.path.join(
            os.path.dirname(self._config_path), "runtime_config.yaml"
        )
        self._runtime_config_mtime: float | None = None
        self._current_config: dict[str, Any] = {}

        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._watch_task: asyncio.Task[None] | None = None

        self._initialize_runtime_config()
        self._reload_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables (API keys) from a .env file."""
        load_dotenv()

    def _load_yaml_config(self) -> dict[str, Any]:
        with open(self._config_path) as file:
            config = yaml.safe_load(file)
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a dictionary")
            return cast(dict[str, Any], config)

    def _initialize_runtime_config(self) -> None:
        """Create runtime_config.yaml from the defaults if it doesn't exist."""
        if os.path.exists(self._runtime_config_path):
            return

        initial_config = copy.deepcopy(self._default_config)
        initial_config["_runtime_config"] = {
            "last_modified": time.time(),
            "version": 1,
            "is_runtime_config": True,
            "default_config_path": os.path.basename(self._config_path),
            "created_from_defaults": True,
        }
        with open(self._runtime_config_path, "w") as file:
            yaml.safe_dump(initial_config, file, default_flow_style=False, indent=2)

    def _load_runtime_config(self) -> dict[str, Any]:
        try:
            with open(self._runtime_config_path) as file:
                config = yaml.safe_load(file)
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Runtime configuration unreadable ({e}), recreating from defaults")
            config = None

        if not isinstance(config, dict):
            with contextlib.suppress(OSError):
                os.remove(self._runtime_config_path)
            self._initialize_runtime_config()
            return copy.deepcopy(self._default_config)
        return cast(dict[str, Any], config)

    def _deep_merge(
        self, base: dict[str, Any], override: dict[str, Any]
    ) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(
                    cast(dict[str, Any], result[key]), cast(dict[str, Any], value)
                )
            else:
                result[key] = value
        return result

    def _reload_config(self) -> bool:
        """Reload configuration if the runtime file changed.

        Returns:
            True if config was reloaded, False if no changes.
        """
        current_mtime = None
        if os.path.exists(self._runtime_config_path):
            current_mtime = os.path.getmtime(self._runtime_config_path)

        if current_mtime == self._runtime_config_mtime and self._current_config:
            return False

        old_config = self._current_config
        self._runtime_config_mtime = current_mtime
        runtime_config = {
            k: v
            for k, v in self._load_runtime_config().items()
            if not k.startswith("_runtime_config")
        }
        self._current_config = self._deep_merge(self._default_config, runtime_config)

        if old_config and self._current_config != old_config:
            self._notify_config_change()
        return True

    def _notify_config_change(self) -> None:
        for callback in list(self._config_change_callbacks):
            try:
                callback(copy.deepcopy(self._current_config))
            except Exception as e:
                logger.error(f"Error in config change callback: {e}")

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Subscribe to configuration change events.

        Args:
            callback: Called with the new config whenever it changes.
        """
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(
        self, callback: Callable[[dict[str, Any]], None]
    ) -> None:
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    async def start_watching(self, interval: float = 1.0) -> None:
        """Start the async file watching task for automatic config updates."""
        if self._watch_task is not None:
            return
        self._watch_task = asyncio.create_task(self._watch_config_file(interval))
        logger.info("Started watching runtime configuration file for changes")

    async def stop_watching(self) -> None:
        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watch_task
            self._watch_task = None
            logger.info("Stopped watching runtime configuration file")

    async def _watch_config_file(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                if self._reload_config():
                    logger.info("Runtime configuration file changed - config reloaded")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error watching config file: {e}")
                await asyncio.sleep(5)

    def get_config_value(self, path: list[str], default: Any = None) -> Any:
        """Get a configuration value by key path, or ``default`` if absent."""
        current: Any = self._current_config
        for key in path:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def reload_runtime_config(self) -> bool:
        """Manually reload runtime configuration."""
        return self._reload_config()

    def save_runtime_config(self, config: dict[str, Any]) -> None:
        """Persist ``config`` as the runtime configuration and reload it."""
        metadata = self.get_runtime_metadata()
        runtime_config = copy.deepcopy(config)
        runtime_config["_runtime_config"] = {
            "last_modified": time.time(),
            "version": metadata.get("version", 0) + 1,
            "is_runtime_config": True,
            "default_config_path": os.path.basename(self._config_path),
        }

        with open(self._runtime_config_path, "w") as file:
            yaml.safe_dump(runtime_config, file, default_flow_style=False, indent=2)

        # Same-second writes can keep the mtime; force the reload
        self._runtime_config_mtime = None
        self._reload_config()

    def set_runtime_value(self, path: list[str], value: Any) -> None:
        """Set a single value in the runtime configuration and persist it."""
        config = copy.deepcopy(self._current_config)
        node = config
        for key in path[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[path[-1]] = value
        self.save_runtime_config(config)

    def get_runtime_metadata(self) -> dict[str, Any]:
        if os.path.exists(self._runtime_config_path):
            try:
                with open(self._runtime_config_path) as f:
                    loaded = yaml.safe_load(f)
                if isinstance(loaded, dict):
                    return cast(dict[str, Any], loaded).get("_runtime_config", {})
            except (yaml.YAMLError, OSError):
                pass
        return {}

    @staticmethod
    def load_config(file_path: str) -> dict[str, Any]:
        """Load MCP server configuration from a JSON file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            JSONDecodeError: If the file is invalid JSON.
        """
        with open(file_path) as f:
            return json.load(f)

    def get_config_dict(self) -> dict[str, Any]:
        return self._current_config

    # ------------------------------------------------------------------
    # LLM providers
    # ------------------------------------------------------------------

    def get_llm_config(self) -> dict[str, Any]:
        return self._current_config.get("llm", {})

    def get_provider_config(self, provider_type: str) -> dict[str, Any]:
        """Configuration block of one provider (base_url, models, ...)."""
        return dict(self.get_llm_config().get("providers", {}).get(provider_type, {}))

    @property
    def active_provider_type(self) -> str:
        """Persisted active provider type; unknown values resolve to the default."""
        active = self.get_llm_config().get("active", DEFAULT_PROVIDER_TYPE)
        if active not in PROVIDER_TYPES:
            logger.warning(
                f"Unknown provider type '{active}', using '{DEFAULT_PROVIDER_TYPE}'"
            )
            return DEFAULT_PROVIDER_TYPE
        return active

    @active_provider_type.setter
    def active_provider_type(self, provider_type: str) -> None:
        self.set_runtime_value(["llm", "active"], provider_type)

    @property
    def active_model(self) -> str:
        """Persisted model override; empty means the provider's default."""
        return self.get_llm_config().get("model") or ""

    @active_model.setter
    def active_model(self, model: str) -> None:
        self.set_runtime_value(["llm", "model"], model)

    # ------------------------------------------------------------------
    # Agent
    # ------------------------------------------------------------------

    def get_agent_config(self) -> dict[str, Any]:
        return self._current_config.get("agent", {})

    def get_max_iterations(self) -> int:
        """Maximum LLM round trips per run (default: 40)."""
        max_iterations = self.get_agent_config().get("max_iterations", DEFAULT_MAX_ITERATIONS)
        if not isinstance(max_iterations, int) or isinstance(max_iterations, bool) or max_iterations < 1:
            raise ValueError("max_iterations must be a positive integer")
        return max_iterations

    def get_max_tokens(self) -> int:
        max_tokens = self.get_agent_config().get("max_tokens", 4096)
        if not isinstance(max_tokens, int) or max_tokens < 1:
            raise ValueError("max_tokens must be a positive integer")
        return max_tokens

    def get_autonomy_config(self) -> dict[str, Any]:
        """Permission profile, per-tool overrides and approval timeout."""
        autonomy = self._current_config.get("autonomy", {})
        timeout = autonomy.get("approval_timeout_seconds")
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ValueError("approval_timeout_seconds must be positive")
        return {
            "permission_profile": autonomy.get("permission_profile", "full_auto"),
            "overrides": dict(autonomy.get("overrides") or {}),
            "approval_timeout_seconds": timeout,
        }

    def get_heartbeat_config(self) -> dict[str, Any]:
        heartbeat = self._current_config.get("heartbeat", {})
        return {
            "enabled": bool(heartbeat.get("enabled", True)),
            "always_poll": bool(heartbeat.get("always_poll", False)),
        }

    def get_skill_directories(self) -> list[str]:
        """Skill directories, relative paths resolved from the package."""
        directories = self._current_config.get("skills", {}).get("directories") or []
        if not isinstance(directories, list):
            raise ValueError("skills.directories must be a list")
        return [
            path if os.path.isabs(path) else os.path.join(_PACKAGE_DIR, path)
            for path in map(str, directories)
        ]

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    def get_connection_pool_config(self) -> dict[str, Any]:
        """HTTP connection pool settings with validated defaults."""
        pool = self._current_config.get("connection_pool", {})
        config = {
            "max_connections": pool.get("max_connections", 50),
            "max_keepalive_connections": pool.get("max_keepalive_connections", 10),
            "keepalive_expiry_seconds": pool.get("keepalive_expiry_seconds", 300.0),
            "request_timeout_seconds": pool.get("request_timeout_seconds", 120.0),
        }
        if config["max_connections"] < 1:
            raise ValueError("max_connections must be at least 1")
        if config["max_keepalive_connections"] > config["max_connections"]:
            raise ValueError("max_keepalive_connections must be <= max_connections")
        if config["request_timeout_seconds"] <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return config

    def get_logging_config(self) -> dict[str, Any]:
        return self._current_config.get("logging", {})

    def get_mcp_connection_config(self) -> dict[str, Any]:
        """MCP connection configuration with validated defaults."""
        connection_config = self._current_config.get("mcp", {}).get("connection", {})

        max_attempts = connection_config.get("max_reconnect_attempts", 5)
        initial_delay = connection_config.get("initial_reconnect_delay", 1.0)
        max_delay = connection_config.get("max_reconnect_delay", 30.0)
        connection_timeout = connection_config.get("connection_timeout", 30.0)
        ping_timeout = connection_config.get("ping_timeout", 10.0)

        if max_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if initial_delay <= 0:
            raise ValueError("initial_reconnect_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_reconnect_delay must be >= initial_reconnect_delay")
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")
        if ping_timeout <= 0:
            raise ValueError("ping_timeout must be positive")

        return {
            "max_reconnect_attempts": max_attempts,
            "initial_reconnect_delay": initial_delay,
            "max_reconnect_delay": max_delay,
            "connection_timeout": connection_timeout,
            "ping_timeout": ping_timeout,
        }

    def get_mcp_servers_path(self) -> str:
        """Path of the MCP servers JSON file, relative paths resolved from the package."""
        path = self._current_config.get("mcp", {}).get("servers_config", "servers_config.json")
        return path if os.path.isabs(path) else os.path.join(_PACKAGE_DIR, path)

    def reset_to_defaults(self) -> None:
        """Reset runtime_config.yaml to the defaults from config.yaml."""
        self.save_runtime_config(copy.deepcopy(self._default_config))


def reset_runtime_config_cli() -> None:
    """Console script that resets runtime_config.yaml to defaults."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")
    try:
        Configuration().reset_to_defaults()
        logger.info("✓ runtime_config.yaml reset to defaults from config.yaml")
    except Exception as e:
        logger.error(f"Error resetting runtime configuration: {e}")
        sys.exit(1)
