"""
Escrow domain models.

- Contract: Escrow engagement and its FSM-managed lifecycle
- LedgerEntry: Immutable money-movement record (defined in escrow.ledger)
- ProviderNotification: Stored inbound provider callbacks
"""

from escrow.ledger.models import LedgerEntry
from escrow.models.contract import Contract
from escrow.models.provider_notification import ProviderNotification

__all__ = [
    "Contract",
    "LedgerEntry",
    "ProviderNotification",
]
