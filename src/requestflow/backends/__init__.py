"""
Backends Module.

Executors that translate a RequestConfig into a concrete store call.

Usage:
    from requestflow.backends import InMemoryBackend

    backend = InMemoryBackend({"tasks": []})
    response = await backend.execute(RequestConfig(table="tasks"))
"""

from requestflow.backends.base import Backend
from requestflow.backends.memory import InMemoryBackend, matches

__all__ = [
    "Backend",
    "InMemoryBackend",
    "matches",
]
