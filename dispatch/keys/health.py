"""Key health probes and model catalog lookup."""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from dispatch.keys.api_key_pool import mask_secret
from dispatch.keys.classifier import (
    CredentialFailure,
    FailureClassification,
    classify_provider_error,
)
from dispatch.llm.gemini_bridge import GEMINI_OPENAI_BASE_URL, BridgeError, GeminiBridge

# Fixed probe target so the result does not depend on the user's model choice
HEALTHCHECK_MODEL = "gemini-2.0-flash"
DEFAULT_CHECK_MODEL = "gemini-1.5-flash"
MODEL_MARKER = "gemini"

_PROBE_PAYLOAD = json.dumps({"contents": [{"role": "user", "parts": [{"text": "hi"}]}]})


class HealthCheckError(Exception):
    """The probe call failed."""

    def __init__(self, message: str, classification: FailureClassification) -> None:
        super().__init__(message)
        self.classification = classification


class ModelCatalogError(Exception):
    """The provider did not return a model list."""


@dataclass
class HealthResult:
    elapsed_ms: float


@dataclass
class KeyCheckResult:
    """Outcome of checking one key against a chosen model."""
    key: str
    status: str  # valid | invalid | checking
    elapsed_ms: Optional[float] = None
    error: Optional[str] = None
    reason: Optional[CredentialFailure] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_id": mask_secret(self.key),
            "status": self.status,
            "ms": self.elapsed_ms,
            "error": self.error,
            "reason": self.reason.value if self.reason else None,
        }


@dataclass
class ModelOption:
    id: str
    label: str

    def to_dict(self) -> Dict[str, str]:
        return {"value": self.id, "label": self.label}


def _default_client(secret: str, timeout: float) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=secret, base_url=GEMINI_OPENAI_BASE_URL, timeout=timeout)


async def check_key_health(
    secret: str,
    client_factory: Optional[Callable[[str], Any]] = None,
    timeout: float = 15.0,
) -> HealthResult:
    """
    Send one minimal request to the fixed health-check model

    Args:
        secret: key to probe
        client_factory: builds an OpenAI-compatible async client for the key
        timeout: request timeout in seconds

    Returns:
        HealthResult with the wall-clock latency

    Raises:
        HealthCheckError: the call failed; carries the error classification
    """
    # a client built here is ours to close; factory clients belong to the caller
    owns_client = client_factory is None
    client = client_factory(secret) if client_factory else _default_client(secret, timeout)
    start_time = time.time()
    try:
        await client.chat.completions.create(
            model=HEALTHCHECK_MODEL,
            messages=[{"role": "user", "content": "hi"}],
            max_tokens=1,
        )
    except (OpenAIError, asyncio.TimeoutError) as exc:
        message = str(exc) or exc.__class__.__name__
        logger.debug(f"Health probe failed for {mask_secret(secret)}: {message[:200]}")
        raise HealthCheckError(message, classify_provider_error(message)) from exc
    finally:
        if owns_client:
            await client.close()

    return HealthResult(elapsed_ms=(time.time() - start_time) * 1000)


async def check_gemini_key(
    secret: str,
    model: str = DEFAULT_CHECK_MODEL,
    bridge: Optional[GeminiBridge] = None,
) -> KeyCheckResult:
    """Validate a key with a real minimal request against ``model``."""
    bridge = bridge or GeminiBridge()
    start_time = time.time()
    try:
        raw = await bridge.native_request(_PROBE_PAYLOAD, model, secret)
        parsed = json.loads(raw)
    except (BridgeError, ValueError) as exc:
        classification = classify_provider_error(str(exc))
        return KeyCheckResult(
            key=secret,
            status="invalid",
            elapsed_ms=(time.time() - start_time) * 1000,
            error=classification.message,
            reason=classification.reason,
        )

    elapsed_ms = (time.time() - start_time) * 1000
    if isinstance(parsed, dict) and ("candidates" in parsed or "usageMetadata" in parsed):
        return KeyCheckResult(key=secret, status="valid", elapsed_ms=elapsed_ms)

    return KeyCheckResult(
        key=secret,
        status="invalid",
        elapsed_ms=elapsed_ms,
        error="Invalid response format from API",
        reason=CredentialFailure.UNKNOWN,
    )


async def fetch_gemini_models(secret: str, bridge: Optional[GeminiBridge] = None) -> List[ModelOption]:
    """List the Gemini models visible to ``secret``."""
    bridge = bridge or GeminiBridge()
    raw = await bridge.native_list_models(secret)
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ModelCatalogError(f"Malformed model catalog: {raw[:200]}") from exc

    models = data.get("models") if isinstance(data, dict) else None
    if isinstance(models, list):
        options = []
        for entry in models:
            if not isinstance(entry, dict):
                continue
            model_id = str(entry.get("name", "")).replace("models/", "")
            if MODEL_MARKER in model_id:
                options.append(ModelOption(id=model_id, label=model_id))
        return options

    error = data.get("error") if isinstance(data, dict) else None
    message = error.get("message") if isinstance(error, dict) else None
    raise ModelCatalogError(message or "Unable to fetch the model list.")
