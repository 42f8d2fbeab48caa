"""
State machine enums for escrow models.
"""

from escrow.state_machines.states import (
    EscrowStatus,
    LedgerEntryType,
    NotificationStatus,
    PaymentStatus,
    PayoutStatus,
    Provider,
)

__all__ = [
    "EscrowStatus",
    "LedgerEntryType",
    "NotificationStatus",
    "PaymentStatus",
    "PayoutStatus",
    "Provider",
]
