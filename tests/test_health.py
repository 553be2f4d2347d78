from __future__ import annotations

import asyncio
import json

import pytest
from openai import OpenAIError

from dispatch.keys import health
from dispatch.keys.classifier import CredentialFailure
from dispatch.keys.health import (
    DEFAULT_CHECK_MODEL,
    HEALTHCHECK_MODEL,
    HealthCheckError,
    ModelCatalogError,
    check_gemini_key,
    check_key_health,
    fetch_gemini_models,
)
from dispatch.llm.gemini_bridge import BridgeError

from tests.conftest import KEY_A, FakeBridge, FakeOpenAIClient


@pytest.mark.asyncio
async def test_check_gemini_key_valid_with_candidates(bridge: FakeBridge) -> None:
    result = await check_gemini_key(KEY_A, bridge=bridge)

    assert result.status == "valid"
    assert result.error is None
    assert result.elapsed_ms is not None and result.elapsed_ms >= 0
    secret, model, payload = bridge.calls[0]
    assert (secret, model) == (KEY_A, DEFAULT_CHECK_MODEL)
    assert json.loads(payload)["contents"][0]["parts"][0]["text"] == "hi"


@pytest.mark.asyncio
async def test_check_gemini_key_accepts_usage_metadata_only() -> None:
    bridge = FakeBridge(default=json.dumps({"usageMetadata": {"totalTokenCount": 1}}))
    result = await check_gemini_key(KEY_A, model="gemini-2.5-pro", bridge=bridge)

    assert result.status == "valid"
    assert bridge.calls[0][1] == "gemini-2.5-pro"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, message, reason",
    [
        (BridgeError("HTTP 429: Quota exceeded", status=429), "Quota exhausted", CredentialFailure.QUOTA_EXHAUSTED),
        (BridgeError("HTTP 400: API_KEY_INVALID", status=400), "Invalid API key", CredentialFailure.INVALID_KEY),
        (BridgeError("HTTP 503: overloaded", status=503), "HTTP 503: overloaded", CredentialFailure.UNKNOWN),
    ],
)
async def test_check_gemini_key_failures(error, message, reason) -> None:
    result = await check_gemini_key(KEY_A, bridge=FakeBridge(default=error))

    assert result.status == "invalid"
    assert result.error == message
    assert result.reason is reason
    assert result.elapsed_ms is not None


@pytest.mark.asyncio
async def test_check_gemini_key_rejects_unexpected_body() -> None:
    result = await check_gemini_key(KEY_A, bridge=FakeBridge(default=json.dumps({"promptFeedback": {}})))

    assert result.status == "invalid"
    assert result.error == "Invalid response format from API"
    assert result.to_dict()["key_id"] == "AIza...0001"


@pytest.mark.asyncio
async def test_fetch_gemini_models_filters_and_strips_prefix() -> None:
    catalog = json.dumps(
        {
            "models": [
                {"name": "models/gemini-2.5-flash"},
                {"name": "models/text-embedding-004"},
                {"name": "models/gemini-2.5-pro"},
            ]
        }
    )
    models = await fetch_gemini_models(KEY_A, bridge=FakeBridge(catalog=catalog))

    assert [m.to_dict() for m in models] == [
        {"value": "gemini-2.5-flash", "label": "gemini-2.5-flash"},
        {"value": "gemini-2.5-pro", "label": "gemini-2.5-pro"},
    ]


@pytest.mark.asyncio
async def test_fetch_gemini_models_surfaces_provider_message() -> None:
    catalog = json.dumps({"error": {"code": 400, "message": "API key not valid. Please pass a valid API key."}})
    with pytest.raises(ModelCatalogError, match="API key not valid"):
        await fetch_gemini_models(KEY_A, bridge=FakeBridge(catalog=catalog))


@pytest.mark.asyncio
async def test_fetch_gemini_models_generic_message() -> None:
    with pytest.raises(ModelCatalogError, match="Unable to fetch the model list."):
        await fetch_gemini_models(KEY_A, bridge=FakeBridge(catalog="{}"))
    with pytest.raises(ModelCatalogError):
        await fetch_gemini_models(KEY_A, bridge=FakeBridge(catalog="<html>bad gateway</html>"))


@pytest.mark.asyncio
async def test_check_key_health_uses_fixed_model() -> None:
    client = FakeOpenAIClient()
    result = await check_key_health(KEY_A, client_factory=lambda secret: client)

    assert result.elapsed_ms >= 0
    call = client.completions.calls[0]
    assert call["model"] == HEALTHCHECK_MODEL
    assert call["max_tokens"] == 1
    assert call["messages"] == [{"role": "user", "content": "hi"}]


@pytest.mark.asyncio
async def test_check_key_health_raises_classified_error() -> None:
    client = FakeOpenAIClient(error=OpenAIError("Error code: 429 - RESOURCE_EXHAUSTED"))
    with pytest.raises(HealthCheckError) as excinfo:
        await check_key_health(KEY_A, client_factory=lambda secret: client)

    assert excinfo.value.classification.reason is CredentialFailure.QUOTA_EXHAUSTED


@pytest.mark.asyncio
async def test_check_key_health_timeout() -> None:
    client = FakeOpenAIClient(error=asyncio.TimeoutError())
    with pytest.raises(HealthCheckError, match="TimeoutError") as excinfo:
        await check_key_health(KEY_A, client_factory=lambda secret: client)

    assert excinfo.value.classification.reason is CredentialFailure.UNKNOWN


@pytest.mark.asyncio
async def test_fetch_gemini_models_empty_catalog_is_not_an_error() -> None:
    models = await fetch_gemini_models(KEY_A, bridge=FakeBridge(catalog=json.dumps({"models": []})))
    assert models == []


@pytest.mark.asyncio
async def test_fetch_gemini_models_skips_malformed_entries() -> None:
    catalog = json.dumps({"models": ["models/gemini-oops", None, {"name": "models/gemini-2.0-flash"}]})
    models = await fetch_gemini_models(KEY_A, bridge=FakeBridge(catalog=catalog))
    assert [m.id for m in models] == ["gemini-2.0-flash"]


@pytest.mark.asyncio
async def test_check_key_health_closes_the_client_it_builds(monkeypatch) -> None:
    built = []

    def fake_default_client(secret, timeout):
        client = FakeOpenAIClient(error=OpenAIError("Connection error.") if built else None)
        built.append(client)
        return client

    monkeypatch.setattr(health, "_default_client", fake_default_client)

    await check_key_health(KEY_A)
    with pytest.raises(HealthCheckError):
        await check_key_health(KEY_A)

    assert [client.closed for client in built] == [True, True]


@pytest.mark.asyncio
async def test_check_key_health_leaves_factory_clients_open() -> None:
    client = FakeOpenAIClient()
    await check_key_health(KEY_A, client_factory=lambda secret: client)
    assert client.closed is False
