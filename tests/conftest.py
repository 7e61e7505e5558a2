from __future__ import annotations

import asyncio
import copy
from typing import Any, Mapping

import pytest

from osdl_runtime.errors import FetchError, RuntimeEngineError


class FakeRouter:
    """In-memory stand-in for ``SourceRouter`` that records every fetch."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.responses: dict[str, Any] = {}
        self.failures: dict[str, int] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.page_data: Any = {}
        self.page_error: RuntimeEngineError | None = None
        self.page_calls = 0

    async def fetch(self, source: Mapping[str, Any]) -> Any:
        query = source.get("query")
        self.calls.append(query)
        gate = self.gates.get(query)
        if gate is not None:
            await gate.wait()
        if self.failures.get(query, 0) > 0:
            self.failures[query] -= 1
            raise FetchError(f"{query} is unavailable")
        if query in self.responses:
            return copy.deepcopy(self.responses[query])
        return {"query": query, "variables": dict(source.get("variables") or {})}

    async def fetch_page(self, data_source: Mapping[str, Any]) -> Any:
        self.page_calls += 1
        if self.page_error is not None:
            raise self.page_error
        return copy.deepcopy(self.page_data)


@pytest.fixture
def router() -> FakeRouter:
    return FakeRouter()
