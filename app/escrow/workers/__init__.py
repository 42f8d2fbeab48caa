"""
Workers for async escrow processing.

This module contains Celery tasks for background escrow operations:
- PayoutExecutor: Executes one payout job per RELEASE ledger entry
- RecoverySweep: Re-enqueues stranded payouts, replays deferred notifications

Usage:
    from escrow.workers import execute_payout, run_recovery_sweep

    execute_payout.apply_async(kwargs=job.to_message(), task_id=job.job_key)
    run_recovery_sweep.delay()
"""

from escrow.workers.payout_executor import execute_payout
from escrow.workers.recovery_sweep import run_recovery_sweep

__all__ = [
    "execute_payout",
    "run_recovery_sweep",
]
