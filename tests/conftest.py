from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from dispatch.keys.api_key_pool import KeyPool
from dispatch.scheduler.task_queue import TaskQueue

KEY_A = "AIzaKeyAlpha00001"
KEY_B = "AIzaKeyBravo00002"
KEY_C = "AIzaKeyCharlie003"

OK_RESPONSE = json.dumps(
    {
        "candidates": [{"content": {"parts": [{"text": "xin chào"}]}}],
        "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 2},
    }
)


class FakeBridge:
    """Scripted stand-in for GeminiBridge.

    ``responses`` maps a key to either one outcome or a list consumed in
    order; an outcome is response text or an exception to raise.
    """

    def __init__(self, responses: Optional[Dict] = None, default=OK_RESPONSE, catalog: str = "{}") -> None:
        self.responses = dict(responses or {})
        self.default = default
        self.catalog = catalog
        self.calls: List[tuple] = []
        self.catalog_calls: List[str] = []

    async def native_request(self, payload: str, model: str, api_key: str) -> str:
        self.calls.append((api_key, model, payload))
        outcome = self.responses.get(api_key, self.default)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def native_list_models(self, api_key: str) -> str:
        self.catalog_calls.append(api_key)
        if isinstance(self.catalog, Exception):
            raise self.catalog
        return self.catalog

    @property
    def keys_called(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeCompletions:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.calls: List[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(choices=[])


class FakeOpenAIClient:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.completions = FakeCompletions(error)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def bridge() -> FakeBridge:
    return FakeBridge()


@pytest.fixture
def key_pool() -> KeyPool:
    return KeyPool([KEY_A, KEY_B, KEY_C], cooldown_seconds=60.0)


@pytest.fixture
def queue() -> TaskQueue:
    return TaskQueue(concurrency_limit=2)
