"""
Shared helpers for CLI commands: logging setup and service lifetime.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tillsync.core.config.loader import load_config
from tillsync.core.sync.service import SyncService

T = TypeVar("T")


def setup_logging(debug: bool = False) -> None:
    """
    Configure logging for CLI commands.

    Args:
        debug: If True, enable DEBUG level logging
    """
    level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def build_service() -> SyncService:
    """Open the service from layered configuration."""
    return SyncService.open(load_config(use_cache=False))


def run_with_service(func: Callable[[SyncService], Awaitable[T]]) -> T:
    """
    Run an async command body against a freshly opened service.

    Uses asyncio.run() to execute async code from Typer's sync CLI context;
    the service is always closed afterwards.
    """

    async def _run() -> T:
        service = build_service()
        try:
            return await func(service)
        finally:
            await service.close()

    return asyncio.run(_run())
