"""
State enums for escrow models.

These are Django TextChoices for database storage and admin integration.
Contract.escrow_status is driven by django-fsm transitions.

State Machines Overview:

Contract (escrow) States:
    created → held → released
    created → held → refunded

RELEASE ledger entry payout States:
    pending → enqueued → in_flight → completed
    in_flight → enqueued (retry)
    pending/enqueued/in_flight → dead_letter

ProviderNotification States:
    received → processed | ignored | unresolved | deferred | failed
    deferred → processed (replayed once the contract exists)
"""

from django.db import models


class EscrowStatus(models.TextChoices):
    """
    States for the Contract escrow lifecycle.

    Terminal states: RELEASED, REFUNDED
    No transition returns to a prior state.
    """

    CREATED = "created", "Created"
    HELD = "held", "Held"
    RELEASED = "released", "Released"
    REFUNDED = "refunded", "Refunded"


class LedgerEntryType(models.TextChoices):
    """Kinds of money movement recorded against a contract."""

    DEPOSIT = "deposit", "Deposit"
    RELEASE = "release", "Release"
    REFUND = "refund", "Refund"


class PayoutStatus(models.TextChoices):
    """
    Payout progress tracked on a RELEASE ledger entry.

    Kept apart from EscrowStatus: a contract is RELEASED as soon as the
    platform decides to release, whether or not funds have moved yet.

    Terminal states: COMPLETED, DEAD_LETTER
    """

    PENDING = "pending", "Pending"
    ENQUEUED = "enqueued", "Enqueued"
    IN_FLIGHT = "in_flight", "In Flight"
    COMPLETED = "completed", "Completed"
    DEAD_LETTER = "dead_letter", "Dead Letter"


class NotificationStatus(models.TextChoices):
    """Processing status of an inbound provider notification."""

    RECEIVED = "received", "Received"
    PROCESSED = "processed", "Processed"
    IGNORED = "ignored", "Ignored"
    UNRESOLVED = "unresolved", "Unresolved"
    DEFERRED = "deferred", "Deferred"
    FAILED = "failed", "Failed"


class PaymentStatus(models.TextChoices):
    """Provider payment statuses after normalization."""

    APPROVED = "approved", "Approved"
    PENDING = "pending", "Pending"
    REJECTED = "rejected", "Rejected"
    REFUNDED = "refunded", "Refunded"
    UNKNOWN = "unknown", "Unknown"


class Provider(models.TextChoices):
    """Payment providers the gateway factory knows how to build."""

    MERCADOPAGO = "mercadopago", "Mercado Pago"
    STRIPE = "stripe", "Stripe"
    SANDBOX = "sandbox", "Sandbox"
