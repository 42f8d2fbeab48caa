"""
Data types for ledger operations.

Types:
    RecordEntryParams: Validated parameters for recording a ledger entry

Usage:
    from escrow.ledger.types import RecordEntryParams

    params = RecordEntryParams(
        contract_id=contract.id,
        entry_type=LedgerEntryType.DEPOSIT,
        amount_cents=100000,
        currency="BRL",
        provider_fee_cents=3000,
        net_amount_cents=97000,
        provider_tx_id="pay_123",
        idempotency_key="deposit:pay_123",
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from escrow.state_machines import LedgerEntryType, PayoutStatus


@dataclass
class RecordEntryParams:
    """
    Parameters for recording a ledger entry.

    Validation runs in __post_init__ so an invalid entry never reaches
    the database.

    Attributes:
        contract_id: Owning contract
        entry_type: DEPOSIT, RELEASE or REFUND
        amount_cents: Gross amount moved (must be positive)
        currency: ISO 4217 currency code
        idempotency_key: Unique key for idempotent recording
        platform_fee_cents / provider_fee_cents / net_amount_cents: Fee split
        provider_tx_id: Required for DEPOSIT and REFUND
        payout_status: Initial payout status (RELEASE only)
        metadata: Extra context stored with the entry
    """

    contract_id: uuid.UUID
    entry_type: LedgerEntryType | str
    amount_cents: int
    currency: str
    idempotency_key: str
    platform_fee_cents: int = 0
    provider_fee_cents: int = 0
    net_amount_cents: int = 0
    provider_tx_id: str | None = None
    payout_status: PayoutStatus | str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate parameters after initialization."""
        if self.amount_cents <= 0:
            raise ValueError("amount_cents must be positive")
        for name in ("platform_fee_cents", "provider_fee_cents", "net_amount_cents"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        if self.entry_type not in LedgerEntryType.values:
            raise ValueError(f"unknown entry_type {self.entry_type!r}")
        if (
            self.entry_type in (LedgerEntryType.DEPOSIT, LedgerEntryType.REFUND)
            and not self.provider_tx_id
        ):
            raise ValueError(f"provider_tx_id is required for {self.entry_type}")
        if self.entry_type == LedgerEntryType.RELEASE and self.provider_tx_id:
            raise ValueError("RELEASE entries get their payout id from the worker")


def deposit_key(provider_tx_id: str) -> str:
    return f"deposit:{provider_tx_id}"


def release_key(contract_id: uuid.UUID | str) -> str:
    return f"release:{contract_id}"


def refund_key(contract_id: uuid.UUID | str) -> str:
    return f"refund:{contract_id}"
