"""
Escrow app configuration.

This app provides the escrow settlement core:
- Contracts with a guarded escrow state machine
- Append-only ledger of deposits, releases and refunds
- Provider adapters (Mercado Pago, Stripe) and notification reconciliation
- Asynchronous worker payouts
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"
