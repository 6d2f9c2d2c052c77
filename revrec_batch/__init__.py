"""
Batch layer: cron evaluation, the reconciliation job state machine, the
in-process polling scheduler that drives it, and the process wiring.
"""

from revrec_batch.cron import CronSpec, matches_cron, next_cron_match, parse_cron
from revrec_batch.job import JobState, ReconciliationJob
from revrec_batch.runtime import RevenueEngine, build_engine
from revrec_batch.scheduler import ReconciliationScheduler

__all__ = [
    "CronSpec",
    "JobState",
    "ReconciliationJob",
    "ReconciliationScheduler",
    "RevenueEngine",
    "build_engine",
    "matches_cron",
    "next_cron_match",
    "parse_cron",
]
