"""Monitoring module for Prometheus metrics."""

from dispatch.monitoring.metrics import (
    api_key_check_latency,
    api_key_pool_size,
    api_key_pool_status,
    key_rotations_total,
    llm_latency,
    llm_requests_total,
    llm_token_usage,
    record_llm_request,
    record_token_usage,
    task_queue_paused,
    task_queue_size,
    update_api_key_pool_metrics,
    update_queue_metrics,
)

__all__ = [
    # Metrics
    'llm_requests_total',
    'llm_latency',
    'llm_token_usage',
    'key_rotations_total',
    'api_key_pool_size',
    'api_key_pool_status',
    'api_key_check_latency',
    'task_queue_size',
    'task_queue_paused',
    # Helper functions
    'record_llm_request',
    'record_token_usage',
    'update_api_key_pool_metrics',
    'update_queue_metrics',
]
