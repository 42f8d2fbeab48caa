"""
Escrow services.

This module provides:
- compute_fees / FeeBreakdown: Fee split in integer cents
- EscrowService: Contract creation, deposit, release and refund
- Reconciler: Applies provider notifications
- PayoutDispatcher / PayoutJob: Asynchronous worker payouts

Usage:
    from escrow.services import EscrowService, Reconciler

    service = EscrowService.default()
    result = service.release(contract_id)
"""

from escrow.services.escrow_service import (
    DepositResult,
    EscrowService,
    RefundResult,
    ReleaseResult,
)
from escrow.services.fee_calculator import FeeBreakdown, compute_fees, platform_fee_for
from escrow.services.payout_dispatcher import PayoutDispatcher, PayoutJob
from escrow.services.reconciliation_service import Reconciler, ReconciliationResult

__all__ = [
    "DepositResult",
    "EscrowService",
    "FeeBreakdown",
    "PayoutDispatcher",
    "PayoutJob",
    "Reconciler",
    "ReconciliationResult",
    "RefundResult",
    "ReleaseResult",
    "compute_fees",
    "platform_fee_for",
]
