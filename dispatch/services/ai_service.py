"""AI service: owns the key pool and feeds provider calls through the task queue."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar, Union

from loguru import logger

from dispatch.keys.api_key_pool import Credential, CredentialStatus, KeyPool, KeyPoolExhaustedError
from dispatch.keys.classifier import CredentialFailure, FailureClassification, classify_provider_error
from dispatch.keys.health import (
    HealthCheckError,
    KeyCheckResult,
    ModelOption,
    check_gemini_key,
    check_key_health,
    fetch_gemini_models,
)
from dispatch.llm.gemini_bridge import BridgeError, GeminiBridge
from dispatch.monitoring.metrics import (
    key_rotations_total,
    record_llm_request,
    record_token_usage,
    update_api_key_pool_metrics,
)
from dispatch.scheduler.task_queue import TaskPriority, TaskQueue

T = TypeVar("T")

LogCallback = Callable[[str], None]


class AIService:
    """
    AI service

    Responsibilities:
    1. Run provider calls with key rotation (quota and invalid keys are skipped)
    2. Submit generation requests to the shared task queue
    3. Check keys and refresh their status in the pool
    4. List the models available to the configured keys
    """

    def __init__(
        self,
        queue: TaskQueue,
        key_pool: KeyPool,
        bridge: Optional[GeminiBridge] = None,
        model: str = "gemini-2.5-flash",
        health_timeout: float = 15.0,
        health_client_factory: Optional[Callable[[str], Any]] = None,
    ) -> None:
        self.queue = queue
        self.key_pool = key_pool
        self.bridge = bridge or GeminiBridge()
        self.model = model
        self.health_timeout = health_timeout
        self.health_client_factory = health_client_factory

        logger.info(f"AI service initialized (model={model}, keys={len(key_pool)})")

    def _log(self, on_log: Optional[LogCallback], message: str) -> None:
        logger.info(message)
        if on_log is not None:
            on_log(message)

    async def with_key_rotation(
        self,
        fn: Callable[[Credential], Awaitable[T]],
        model: Optional[str] = None,
        on_log: Optional[LogCallback] = None,
    ) -> T:
        """
        Run ``fn`` with successive eligible keys

        A key whose call fails with a quota, expiry or invalid-key signature
        is marked in the pool and the next key is tried; at most one attempt
        per pooled key. Other failures are raised as-is.

        Raises:
            KeyPoolExhaustedError: no key is configured or every key failed
        """
        model = model or self.model
        if len(self.key_pool) == 0:
            raise KeyPoolExhaustedError("Missing API key.")

        attempted: Set[str] = set()
        last_error: Optional[Exception] = None

        for _ in range(len(self.key_pool)):
            credential = self.key_pool.select(exclude=attempted)
            if credential is None:
                break
            attempted.add(credential.secret)
            key_id = credential.key_id
            start_time = time.time()

            try:
                result = await fn(credential)
            except BridgeError as exc:
                classification = classify_provider_error(str(exc))
                record_llm_request(model, key_id, classification.reason.value)
                self.key_pool.mark_failure(credential.secret, classification)
                update_api_key_pool_metrics(self.key_pool.stats())
                if not classification.is_credential_failure:
                    raise
                last_error = classification.to_error(key_id)
                key_rotations_total.labels(reason=classification.reason.value).inc()
                self._log(on_log, f"Key {key_id} failed ({classification.message}), trying next key")
                continue

            latency = time.time() - start_time
            self.key_pool.mark_success(credential.secret)
            record_llm_request(model, key_id, "success", latency)
            return result

        update_api_key_pool_metrics(self.key_pool.stats())
        message = f"All API keys exhausted after {len(attempted)} attempt(s)"
        if last_error is not None:
            message = f"{message}: {last_error}"
        raise KeyPoolExhaustedError(message, last_error=last_error)

    async def generate_content(
        self,
        payload: Dict[str, Any],
        task_id: str,
        priority: Union[TaskPriority, str] = TaskPriority.NORMAL,
        model: Optional[str] = None,
        on_log: Optional[LogCallback] = None,
    ) -> Dict[str, Any]:
        """
        Queue one ``generateContent`` call

        Args:
            payload: Gemini request body, prompt already built by the caller
            task_id: queue id; a second request with the same id is rejected
            priority: queue lane
            model: overrides the service default
            on_log: receives human-readable progress lines

        Returns:
            The parsed provider response
        """
        model = model or self.model
        body = json.dumps(payload, ensure_ascii=False)

        async def call(credential: Credential) -> Dict[str, Any]:
            raw = await self.bridge.native_request(body, model, credential.secret)
            return json.loads(raw)

        async def unit_of_work() -> Dict[str, Any]:
            self._log(on_log, f"Task {task_id} started on {model}")
            response = await self.with_key_rotation(call, model=model, on_log=on_log)
            record_token_usage(model, response.get("usageMetadata"))
            return response

        return await self.queue.enqueue(priority, unit_of_work, task_id)

    async def check_all_keys(self, model: Optional[str] = None) -> List[KeyCheckResult]:
        """Check every pooled key against ``model`` concurrently."""
        model = model or self.model
        secrets = [credential.secret for credential in self.key_pool.credentials()]
        results = await asyncio.gather(*(self._check_one(secret, model) for secret in secrets))

        valid = sum(1 for r in results if r.status == "valid")
        logger.info(f"Key check finished: {valid}/{len(results)} valid (model={model})")
        update_api_key_pool_metrics(self.key_pool.stats())
        return list(results)

    async def _check_one(self, secret: str, model: str) -> KeyCheckResult:
        if not self.key_pool.begin_check(secret):
            return KeyCheckResult(key=secret, status="checking")

        try:
            result = await check_gemini_key(secret, model, bridge=self.bridge)
        except BaseException:
            self.key_pool.finish_check(secret)
            raise

        if result.status == "valid":
            self.key_pool.finish_check(secret, CredentialStatus.VALID, latency_ms=result.elapsed_ms)
        else:
            classification = None
            if result.reason is not None and result.reason != CredentialFailure.UNKNOWN:
                classification = FailureClassification(reason=result.reason, message=result.error or "")
            self.key_pool.finish_check(secret, error=result.error, classification=classification)
        return result

    async def probe_key(self, secret: str) -> Optional[Credential]:
        """Probe one key with the fixed health-check model and update its status."""
        if not self.key_pool.begin_check(secret):
            return self.key_pool.get(secret)

        try:
            health = await check_key_health(
                secret,
                client_factory=self.health_client_factory,
                timeout=self.health_timeout,
            )
        except HealthCheckError as exc:
            # only definitive signatures change the status; anything else may be a network blip
            self.key_pool.finish_check(secret, error=exc.classification.message, classification=exc.classification)
        except BaseException:
            self.key_pool.finish_check(secret)
            raise
        else:
            self.key_pool.finish_check(secret, CredentialStatus.VALID, latency_ms=health.elapsed_ms)

        update_api_key_pool_metrics(self.key_pool.stats())
        return self.key_pool.get(secret)

    async def list_models(self) -> List[ModelOption]:
        """Fetch the model catalog with the first usable key."""
        credential = self.key_pool.select()
        if credential is None:
            raise KeyPoolExhaustedError("Missing API key.")
        return await fetch_gemini_models(credential.secret, bridge=self.bridge)

    def load_keys(self, raw: str, primary: Optional[str] = None) -> int:
        """Add a primary key and a pasted pool block; returns how many were new."""
        added = 0
        if primary and primary.strip() and self.key_pool.add_key(primary):
            added += 1
        added += self.key_pool.add_keys(raw)
        update_api_key_pool_metrics(self.key_pool.stats())
        return added
