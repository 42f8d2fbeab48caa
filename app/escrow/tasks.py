"""
Celery task registry for the escrow app.

Celery's autodiscovery imports ``<app>.tasks``; the tasks themselves live
in escrow.workers.

Usage:
    from escrow.tasks import run_recovery_sweep

    run_recovery_sweep.delay()
"""

from escrow.workers import execute_payout, run_recovery_sweep

__all__ = [
    "execute_payout",
    "run_recovery_sweep",
]
