"""API key pool, provider error classification and key health checks."""

from dispatch.keys.api_key_pool import (
    Credential,
    CredentialStatus,
    KeyPool,
    KeyPoolExhaustedError,
    parse_key_pool,
)
from dispatch.keys.classifier import (
    CredentialError,
    CredentialExpiredError,
    CredentialFailure,
    CredentialInvalidError,
    CredentialQuotaExhaustedError,
    classify_provider_error,
)
from dispatch.keys.health import (
    HEALTHCHECK_MODEL,
    HealthCheckError,
    ModelCatalogError,
    check_gemini_key,
    check_key_health,
    fetch_gemini_models,
)

__all__ = [
    'Credential',
    'CredentialStatus',
    'KeyPool',
    'KeyPoolExhaustedError',
    'parse_key_pool',
    'CredentialError',
    'CredentialExpiredError',
    'CredentialFailure',
    'CredentialInvalidError',
    'CredentialQuotaExhaustedError',
    'classify_provider_error',
    'HEALTHCHECK_MODEL',
    'HealthCheckError',
    'ModelCatalogError',
    'check_gemini_key',
    'check_key_health',
    'fetch_gemini_models',
]
