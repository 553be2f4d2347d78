#!/usr/bin/env python3
"""
Verify API keys
Checks every configured Gemini key and reports which ones are usable
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List

from loguru import logger

# Add the project root to the Python path
ROOT_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT_DIR))

from config import settings
from dispatch.keys.api_key_pool import CredentialStatus, KeyPool
from dispatch.keys.health import KeyCheckResult, ModelCatalogError, fetch_gemini_models
from dispatch.llm.gemini_bridge import BridgeError, GeminiBridge
from dispatch.runtime import build_key_pool
from dispatch.scheduler.task_queue import TaskQueue
from dispatch.services.ai_service import AIService
from utils.logger import configure_logging


def load_key_pool(path: str = None) -> KeyPool:
    """Keys from ``path`` if given, otherwise from the service configuration."""
    if path:
        config_path = Path(path)
        if not config_path.exists():
            logger.error(f"API key file not found: {config_path}")
            sys.exit(1)
        return KeyPool.from_yaml(config_path)
    return build_key_pool(settings)


def print_results(results: List[KeyCheckResult]) -> bool:
    """Print the check report; True when every key is valid."""
    logger.info("=== API key verification ===")

    success_count = 0
    for result in results:
        report = result.to_dict()
        if result.status == "valid":
            logger.success(f"✅ {report['key_id']}: valid ({result.elapsed_ms:.0f} ms)")
            success_count += 1
        else:
            logger.error(f"❌ {report['key_id']}: {result.error}")

    error_count = len(results) - success_count
    logger.info(f"Total: {len(results)} key(s), valid: {success_count}, invalid: {error_count}")

    if error_count > 0:
        logger.warning(f"⚠️  {error_count} API key(s) are not usable, check the configuration")
        return False
    logger.success("✅ All API keys are usable")
    return True


async def run_checks(service: AIService, quick: bool, model: str) -> List[KeyCheckResult]:
    if not quick:
        return await service.check_all_keys(model)

    results = []
    for credential in service.key_pool.credentials():
        updated = await service.probe_key(credential.secret)
        valid = updated is not None and updated.status == CredentialStatus.VALID
        results.append(
            KeyCheckResult(
                key=credential.secret,
                status="valid" if valid else "invalid",
                elapsed_ms=updated.last_latency_ms if updated else None,
                error=None if valid else (updated.last_error if updated else "removed"),
            )
        )
    return results


async def list_models(pool: KeyPool, bridge: GeminiBridge) -> bool:
    credential = pool.select()
    if credential is None:
        logger.error("No usable API key to list models with")
        return False
    try:
        models = await fetch_gemini_models(credential.secret, bridge=bridge)
    except (ModelCatalogError, BridgeError) as exc:
        logger.error(f"Failed to fetch models: {exc}")
        return False
    for model in models:
        logger.info(f"  {model.id}")
    logger.info(f"{len(models)} Gemini model(s) available")
    return True


def main():
    parser = argparse.ArgumentParser(description="Verify configured Gemini API keys")
    parser.add_argument("--file", help="YAML key file with primary_key and pool")
    parser.add_argument("--model", default=settings.ai_model, help="model used for the check")
    parser.add_argument("--quick", action="store_true", help="probe with the fixed health-check model instead")
    parser.add_argument("--models", action="store_true", help="list available models and exit")
    args = parser.parse_args()

    configure_logging()
    logger.info("=== Starting API key verification ===")

    pool = load_key_pool(args.file)
    if len(pool) == 0:
        logger.error("No API keys configured")
        sys.exit(1)

    bridge = GeminiBridge(base_url=settings.gemini_base_url, timeout=settings.request_timeout)
    if args.models:
        sys.exit(0 if asyncio.run(list_models(pool, bridge)) else 1)

    service = AIService(TaskQueue(concurrency_limit=1), pool, bridge=bridge, model=args.model)
    results = asyncio.run(run_checks(service, args.quick, args.model))

    success = print_results(results)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
