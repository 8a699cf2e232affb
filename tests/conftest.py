"""Pytest configuration and shared fixtures."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from nkdocker.transport import Connection


def make_connection(endpoint=("tcp", "127.0.0.1", 2376)) -> Connection:
    """Connection over an in-memory reader and a mock writer."""
    reader = asyncio.StreamReader()
    writer = MagicMock()
    writer.is_closing.return_value = False
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    return Connection(reader, writer, endpoint)


@pytest.fixture
def connection_factory():
    """Factory for in-memory connections (needs a running loop)."""
    return make_connection


@pytest.fixture
def sample_containers():
    """Container list as returned by the engine."""
    return [
        {
            "Id": "8dfafdbc3a40aa0a3bd7f1e1d0e2a1f5c7b9d8e6f4a3b2c1d0e9f8a7b6c5d4e3",
            "Image": "nginx:latest",
            "Status": "Up 2 hours",
            "Names": ["/web"],
        },
        {
            "Id": "9cd87474be90b2b7c2a3d4e5f60718293a4b5c6d7e8f90a1b2c3d4e5f6a7b8c9",
            "Image": "redis:7",
            "Status": "Exited (0) 5 minutes ago",
            "Names": ["/cache"],
        },
    ]
