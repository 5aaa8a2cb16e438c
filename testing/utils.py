"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
from typing import Callable


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_for(
    predicate: Callable[[], bool],
    timeout: float = 5,
    interval: float = 0.005,
) -> None:
    """Wait until predicate returns true.

    Raises:
        TimeoutError: If predicate is still false after timeout seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:  # pragma: no cover
            raise TimeoutError(f'Condition not met within {timeout} seconds.')
        await asyncio.sleep(interval)
