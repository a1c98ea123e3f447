"""
CLI Context for managing application dependencies.

Provides a clean way to manage CLI-level dependencies like settings and the
transfer client, avoiding global state and enabling proper dependency
injection.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, TypeVar

from .client import Client
from .operations import Operations, OpsConfig
from .settings import Settings, create_settings_from_env

T = TypeVar("T")


@dataclass
class CLIContext:
    """
    Shared context for CLI commands.

    Manages application-level dependencies (settings, HTTP client options)
    that are initialized once and shared across a CLI command execution.

    This eliminates the need for global state and provides clean dependency
    injection for CLI commands.
    """
    settings: Settings
    client_options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> CLIContext:
        """
        Create CLI context from environment variables.

        Returns:
            CLIContext with settings loaded from environment
        """
        settings = create_settings_from_env()
        return cls(settings=settings)

    def create_client(self) -> Client:
        """Build a transfer client owning its own HTTP connection pool."""
        return Client(
            settings=self.settings,
            runner_options={"client_options": dict(self.client_options)},
        )

    def run(self, config: OpsConfig, action: Callable[[Operations], Awaitable[T]]) -> T:
        """
        Run one async operation on a fresh event loop.

        The client is created inside the loop and closed before it ends.
        """
        async def _main() -> T:
            async with self.create_client() as client:
                ops = Operations(config=config, client=client, settings=self.settings)
                return await action(ops)

        return asyncio.run(_main())
