"""Prometheus metrics for the AI dispatcher."""

from __future__ import annotations

from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

from dispatch.scheduler.task_queue import QueueSnapshot

# ========================================
# LLM API Metrics
# ========================================

llm_requests_total = Counter(
    'llm_requests_total',
    'Total number of LLM API requests',
    ['model', 'api_key_id', 'status']  # status: success, quota_exhausted, invalid_key, expired, unknown
)

llm_latency = Histogram(
    'llm_latency_seconds',
    'LLM API request latency in seconds',
    ['model', 'api_key_id'],
    buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)
)

llm_token_usage = Counter(
    'llm_token_usage_total',
    'Total number of tokens used by LLM',
    ['model', 'token_type']  # token_type: prompt_tokens, completion_tokens
)

key_rotations_total = Counter(
    'llm_key_rotations_total',
    'Number of times a call moved on to the next API key',
    ['reason']
)

# ========================================
# API Key Pool Metrics
# ========================================

api_key_pool_size = Gauge(
    'api_key_pool_size',
    'Total number of API keys in pool'
)

api_key_pool_status = Gauge(
    'api_key_pool_status_keys',
    'Number of API keys per status',
    ['status']
)

api_key_check_latency = Gauge(
    'api_key_check_latency_ms',
    'Latency of the last successful key check',
    ['key_id']
)

# ========================================
# Task Queue Metrics
# ========================================

task_queue_size = Gauge(
    'task_queue_size',
    'Current number of tasks in queue',
    ['queue_type']  # queue_type: pending, running
)

task_queue_paused = Gauge(
    'task_queue_paused',
    '1 while the task queue is paused'
)


# ========================================
# Helper Functions
# ========================================

def record_llm_request(model: str, api_key_id: str, status: str, latency: Optional[float] = None):
    """Record one provider call."""
    llm_requests_total.labels(model=model, api_key_id=api_key_id, status=status).inc()
    if latency is not None:
        llm_latency.labels(model=model, api_key_id=api_key_id).observe(latency)


def record_token_usage(model: str, usage: Optional[Dict]):
    """Record token counts from a Gemini ``usageMetadata`` block."""
    if not usage:
        return
    prompt_tokens = usage.get('promptTokenCount') or 0
    completion_tokens = usage.get('candidatesTokenCount') or 0
    if prompt_tokens:
        llm_token_usage.labels(model=model, token_type='prompt_tokens').inc(prompt_tokens)
    if completion_tokens:
        llm_token_usage.labels(model=model, token_type='completion_tokens').inc(completion_tokens)


def update_api_key_pool_metrics(stats: Dict):
    """Refresh pool gauges from ``KeyPool.stats()``."""
    api_key_pool_size.set(stats.get('total_keys', 0))
    for status, count in stats.get('by_status', {}).items():
        api_key_pool_status.labels(status=status).set(count)
    for key in stats.get('keys', []):
        if key.get('last_latency_ms') is not None:
            api_key_check_latency.labels(key_id=key['key_id']).set(key['last_latency_ms'])


def update_queue_metrics(snapshot: QueueSnapshot):
    """Queue subscriber keeping the queue gauges current."""
    task_queue_size.labels(queue_type='pending').set(snapshot.pending_count)
    task_queue_size.labels(queue_type='running').set(snapshot.running_count)
    task_queue_paused.set(1 if snapshot.paused else 0)
