"""Prometheus counters for dispatch, quota, audit and sweep activity."""

from __future__ import annotations

from prometheus_client import Counter

DISPATCH_OUTCOMES = Counter(
    "insights_dispatch_total",
    "Outbound insight dispatches by terminal status.",
    ["status"],
)

QUOTA_REJECTIONS = Counter(
    "insights_quota_rejections_total",
    "Analysis requests refused before dispatch.",
    ["reason"],
)

AUDIT_RATE_LIMITED = Counter(
    "insights_audit_rate_limited_total",
    "Admin audit entries refused by the per-actor rate limit.",
)

SWEEP_RESULTS = Counter(
    "insights_deletion_sweep_accounts_total",
    "Accounts processed by the deferred deletion sweeper.",
    ["outcome"],
)
