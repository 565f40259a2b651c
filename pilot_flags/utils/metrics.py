"""Prometheus metrics for flag evaluation and the snapshot cache."""

from __future__ import annotations

from prometheus_client import Counter

flag_checks_total = Counter(
    "flag_checks_total", "Feature flag checks by outcome", ["outcome"]
)
flag_cache_hits_total = Counter(
    "flag_cache_hits_total", "Flag snapshot cache hits", ["namespace"]
)
flag_cache_miss_total = Counter(
    "flag_cache_miss_total", "Flag snapshot cache misses", ["namespace"]
)
flag_cache_errors_total = Counter(
    "flag_cache_errors_total",
    "Swallowed cache backend failures",
    ["operation"],
)
flag_cache_invalidations_total = Counter(
    "flag_cache_invalidations_total", "Cache purges triggered by mutations"
)
flag_store_reads_total = Counter(
    "flag_store_reads_total", "Store reads on the evaluation path", ["result"]
)
