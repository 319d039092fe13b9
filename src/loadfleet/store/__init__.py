"""Run state stores for LoadFleet."""

from __future__ import annotations

from loadfleet.store.base import RunStateStore
from loadfleet.store.json_file import JsonFileRunStore
from loadfleet.store.memory import InMemoryRunStore

__all__ = [
    "InMemoryRunStore",
    "JsonFileRunStore",
    "RunStateStore",
]
