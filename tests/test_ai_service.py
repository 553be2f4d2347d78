from __future__ import annotations

import asyncio
import json

import pytest
from openai import OpenAIError

from dispatch.keys.api_key_pool import CredentialStatus, KeyPool, KeyPoolExhaustedError
from dispatch.keys.classifier import (
    CredentialInvalidError,
    CredentialQuotaExhaustedError,
    classify_provider_error,
)
from dispatch.keys.health import ModelCatalogError
from dispatch.llm.gemini_bridge import BridgeError
from dispatch.scheduler.task_queue import DuplicateTaskError, TaskQueue
from dispatch.services.ai_service import AIService

from tests.conftest import KEY_A, KEY_B, KEY_C, OK_RESPONSE, FakeBridge, FakeOpenAIClient

PAYLOAD = {"contents": [{"role": "user", "parts": [{"text": "Dịch chương 12"}]}]}


def quota_error() -> BridgeError:
    return BridgeError('HTTP 429: {"error": {"message": "Quota exceeded"}}', status=429)


def make_service(pool: KeyPool, bridge: FakeBridge, **kwargs) -> AIService:
    return AIService(TaskQueue(concurrency_limit=2), pool, bridge=bridge, **kwargs)


@pytest.mark.asyncio
async def test_rotation_moves_to_next_key_on_quota(key_pool: KeyPool) -> None:
    bridge = FakeBridge(responses={KEY_A: quota_error()})
    logs = []
    service = make_service(key_pool, bridge)

    response = await service.generate_content(PAYLOAD, "chapter-12", on_log=logs.append)

    assert response == json.loads(OK_RESPONSE)
    assert bridge.keys_called == [KEY_A, KEY_B]
    assert key_pool.get(KEY_A).status == CredentialStatus.RATE_LIMITED
    assert key_pool.get(KEY_B).status == CredentialStatus.VALID
    assert any("trying next key" in line for line in logs)


@pytest.mark.asyncio
async def test_invalid_key_is_marked_and_skipped_next_time(key_pool: KeyPool) -> None:
    bridge = FakeBridge(responses={KEY_A: BridgeError("HTTP 400: API_KEY_INVALID", status=400)})
    service = make_service(key_pool, bridge)

    await service.generate_content(PAYLOAD, "first")
    await service.generate_content(PAYLOAD, "second")

    assert bridge.keys_called == [KEY_A, KEY_B, KEY_B]
    assert key_pool.get(KEY_A).status == CredentialStatus.INVALID


@pytest.mark.asyncio
async def test_all_keys_exhausted_after_one_attempt_each(key_pool: KeyPool) -> None:
    bridge = FakeBridge(
        responses={
            KEY_A: quota_error(),
            KEY_B: BridgeError("HTTP 400: API_KEY_INVALID", status=400),
            KEY_C: quota_error(),
        }
    )
    service = make_service(key_pool, bridge)

    with pytest.raises(KeyPoolExhaustedError) as excinfo:
        await service.generate_content(PAYLOAD, "doomed")

    assert bridge.keys_called == [KEY_A, KEY_B, KEY_C]
    assert isinstance(excinfo.value.last_error, CredentialQuotaExhaustedError)
    assert "3 attempt(s)" in str(excinfo.value)
    assert service.queue.snapshot().running_count == 0


@pytest.mark.asyncio
async def test_unclassified_error_is_raised_without_rotation(key_pool: KeyPool) -> None:
    bridge = FakeBridge(responses={KEY_A: BridgeError("HTTP 500: internal error", status=500)})
    service = make_service(key_pool, bridge)

    with pytest.raises(BridgeError, match="HTTP 500"):
        await service.generate_content(PAYLOAD, "server-error")

    assert bridge.keys_called == [KEY_A]
    record = key_pool.get(KEY_A)
    assert record.status == CredentialStatus.UNCHECKED
    assert record.failed_calls == 1


@pytest.mark.asyncio
async def test_empty_pool_reports_missing_key() -> None:
    service = make_service(KeyPool(), FakeBridge())
    with pytest.raises(KeyPoolExhaustedError, match="Missing API key."):
        await service.generate_content(PAYLOAD, "no-keys")


@pytest.mark.asyncio
async def test_with_key_rotation_skips_keys_already_unusable(key_pool: KeyPool) -> None:
    service = make_service(key_pool, FakeBridge())
    key_pool.mark_failure(KEY_A, classify_provider_error("API_KEY_INVALID"))
    seen = []

    async def fn(credential):
        seen.append(credential.secret)
        if credential.secret == KEY_B:
            raise BridgeError("HTTP 400: API_KEY_INVALID", status=400)
        return credential.secret

    assert await service.with_key_rotation(fn) == KEY_C
    assert seen == [KEY_B, KEY_C]


@pytest.mark.asyncio
async def test_last_error_is_invalid_key_when_that_failed_last() -> None:
    pool = KeyPool([KEY_A])
    service = make_service(pool, FakeBridge(default=BridgeError("HTTP 400: API_KEY_INVALID", status=400)))

    with pytest.raises(KeyPoolExhaustedError) as excinfo:
        await service.generate_content(PAYLOAD, "single")
    assert isinstance(excinfo.value.last_error, CredentialInvalidError)


@pytest.mark.asyncio
async def test_duplicate_generation_request_is_rejected(key_pool: KeyPool) -> None:
    gate = asyncio.Event()

    class SlowBridge(FakeBridge):
        async def native_request(self, payload, model, api_key):
            await gate.wait()
            return await super().native_request(payload, model, api_key)

    service = make_service(key_pool, SlowBridge())
    first = asyncio.ensure_future(service.generate_content(PAYLOAD, "chapter-3"))
    await asyncio.sleep(0.01)

    with pytest.raises(DuplicateTaskError):
        await service.generate_content(PAYLOAD, "chapter-3")

    gate.set()
    assert "candidates" in await first


@pytest.mark.asyncio
async def test_generate_content_uses_requested_model(key_pool: KeyPool) -> None:
    bridge = FakeBridge()
    service = make_service(key_pool, bridge, model="gemini-2.5-flash")

    await service.generate_content(PAYLOAD, "custom", priority="HIGH", model="gemini-2.5-pro")

    _, model, body = bridge.calls[0]
    assert model == "gemini-2.5-pro"
    assert json.loads(body) == PAYLOAD


@pytest.mark.asyncio
async def test_check_all_keys_updates_statuses(key_pool: KeyPool) -> None:
    key_pool.mark_success(KEY_C)
    bridge = FakeBridge(
        responses={
            KEY_B: quota_error(),
            KEY_C: BridgeError("Network error: connection reset"),
        }
    )
    service = make_service(key_pool, bridge)

    results = await service.check_all_keys("gemini-2.5-flash")

    assert [r.status for r in results] == ["valid", "invalid", "invalid"]
    assert results[1].error == "Quota exhausted"
    assert key_pool.get(KEY_A).status == CredentialStatus.VALID
    assert key_pool.get(KEY_A).last_latency_ms is not None
    assert key_pool.get(KEY_B).status == CredentialStatus.RATE_LIMITED
    # transport failures are not definitive; the key keeps its prior status
    assert key_pool.get(KEY_C).status == CredentialStatus.VALID
    assert key_pool.get(KEY_C).last_error == "Network error: connection reset"


@pytest.mark.asyncio
async def test_check_all_keys_skips_key_already_under_check(key_pool: KeyPool) -> None:
    bridge = FakeBridge()
    service = make_service(key_pool, bridge)
    key_pool.begin_check(KEY_A)

    results = await service.check_all_keys()

    assert results[0].status == "checking"
    assert KEY_A not in bridge.keys_called
    assert key_pool.get(KEY_A).status == CredentialStatus.CHECKING


@pytest.mark.asyncio
async def test_probe_key_success_marks_valid(key_pool: KeyPool) -> None:
    service = make_service(key_pool, FakeBridge(), health_client_factory=lambda secret: FakeOpenAIClient())

    record = await service.probe_key(KEY_B)

    assert record.status == CredentialStatus.VALID
    assert record.last_latency_ms is not None


@pytest.mark.asyncio
async def test_probe_key_network_failure_reverts_status(key_pool: KeyPool) -> None:
    client = FakeOpenAIClient(error=OpenAIError("Connection error."))
    service = make_service(key_pool, FakeBridge(), health_client_factory=lambda secret: client)

    record = await service.probe_key(KEY_A)

    assert record.status == CredentialStatus.UNCHECKED
    assert record.last_error == "Connection error."


@pytest.mark.asyncio
async def test_probe_key_invalid_signature_marks_invalid(key_pool: KeyPool) -> None:
    client = FakeOpenAIClient(error=OpenAIError("Error code: 400 - API_KEY_INVALID"))
    service = make_service(key_pool, FakeBridge(), health_client_factory=lambda secret: client)

    record = await service.probe_key(KEY_A)

    assert record.status == CredentialStatus.INVALID
    assert record.last_error == "Invalid API key"


@pytest.mark.asyncio
async def test_list_models_uses_first_usable_key(key_pool: KeyPool) -> None:
    key_pool.mark_failure(KEY_A, classify_provider_error("API_KEY_INVALID"))
    bridge = FakeBridge(catalog=json.dumps({"models": [{"name": "models/gemini-2.5-flash"}]}))
    service = make_service(key_pool, bridge)

    models = await service.list_models()

    assert [m.id for m in models] == ["gemini-2.5-flash"]
    assert bridge.catalog_calls == [KEY_B]


@pytest.mark.asyncio
async def test_list_models_error_propagates(key_pool: KeyPool) -> None:
    bridge = FakeBridge(catalog=json.dumps({"error": {"message": "PERMISSION_DENIED"}}))
    service = make_service(key_pool, bridge)

    with pytest.raises(ModelCatalogError, match="PERMISSION_DENIED"):
        await service.list_models()


def test_load_keys_adds_primary_and_pool() -> None:
    pool = KeyPool()
    service = make_service(pool, FakeBridge())

    assert service.load_keys(f"{KEY_B}\n{KEY_C}\n{KEY_B}", primary=KEY_A) == 3
    assert service.load_keys(KEY_C, primary="   ") == 0
    assert [c.secret for c in pool.credentials()] == [KEY_A, KEY_B, KEY_C]


@pytest.mark.asyncio
async def test_key_removed_during_call_keeps_the_call_outcome(key_pool: KeyPool) -> None:
    gate = asyncio.Event()

    class GatedBridge(FakeBridge):
        async def native_request(self, payload, model, api_key):
            await gate.wait()
            return await super().native_request(payload, model, api_key)

    service = make_service(key_pool, GatedBridge(responses={KEY_B: quota_error()}))
    succeeded = asyncio.ensure_future(service.generate_content(PAYLOAD, "ch-1"))
    await asyncio.sleep(0.01)
    key_pool.remove_key(KEY_A)
    gate.set()

    assert "candidates" in await succeeded
    assert KEY_A not in key_pool


@pytest.mark.asyncio
async def test_key_removed_during_failed_call_keeps_the_provider_error() -> None:
    pool = KeyPool([KEY_A, KEY_B])
    gate = asyncio.Event()

    class GatedBridge(FakeBridge):
        async def native_request(self, payload, model, api_key):
            await gate.wait()
            return await super().native_request(payload, model, api_key)

    bridge = GatedBridge(responses={KEY_A: BridgeError("HTTP 500: internal error", status=500)})
    service = make_service(pool, bridge)
    failing = asyncio.ensure_future(service.generate_content(PAYLOAD, "ch-2"))
    await asyncio.sleep(0.01)
    pool.remove_key(KEY_A)
    gate.set()

    with pytest.raises(BridgeError, match="HTTP 500"):
        await failing
    assert pool.get(KEY_B).failed_calls == 0
