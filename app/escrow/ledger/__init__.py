"""
Ledger - immutable record of escrow money movements.

Public API:
    Models:
        LedgerEntry - One DEPOSIT, RELEASE or REFUND of a contract

    Service:
        LedgerService - Recording, lookups and payout tracking

    Types:
        RecordEntryParams - Parameters for recording entries
        deposit_key / release_key / refund_key - Idempotency key builders

Usage:
    from escrow.ledger import LedgerService, RecordEntryParams, deposit_key

    entry, created = LedgerService.record_entry(RecordEntryParams(
        contract_id=contract.id,
        entry_type=LedgerEntryType.DEPOSIT,
        amount_cents=100000,
        currency="BRL",
        provider_fee_cents=3000,
        net_amount_cents=97000,
        provider_tx_id="pay_123",
        idempotency_key=deposit_key("pay_123"),
    ))
"""

from .models import LedgerEntry
from .services import LedgerService
from .types import RecordEntryParams, deposit_key, refund_key, release_key

__all__ = [
    # Models
    "LedgerEntry",
    # Service
    "LedgerService",
    # Types
    "RecordEntryParams",
    "deposit_key",
    "release_key",
    "refund_key",
]
