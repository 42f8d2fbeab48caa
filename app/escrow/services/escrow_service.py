"""
Escrow service: the operations that move a contract through its lifecycle.

Every state-changing operation locks the contract row inside
transaction.atomic() and then applies a django-fsm transition, so two
concurrent operations on the same contract serialize and the loser sees
InvalidStateError. Work that must happen only after the financial
decision is durable (payout enqueue) runs in transaction.on_commit.

Usage:
    from escrow.services import EscrowService

    service = EscrowService.default()
    contract = service.create_contract(
        client_id="client-1",
        worker_id="worker-9",
        gross_amount_cents=100000,
    )
    preference = service.request_deposit(contract.id, return_url)
    ...
    result = service.release(contract.id)
    result.fees.net_amount_cents
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django_fsm import ConcurrentTransition, TransitionNotAllowed

from escrow.adapters import IdempotencyKeyGenerator, get_payment_gateway
from escrow.exceptions import (
    ContractNotFoundError,
    EscrowValidationError,
    InvalidStateError,
)
from escrow.ledger import (
    LedgerEntry,
    LedgerService,
    RecordEntryParams,
    deposit_key,
    refund_key,
    release_key,
)
from escrow.models import Contract
from escrow.services.fee_calculator import FeeBreakdown, compute_fees
from escrow.state_machines import EscrowStatus, LedgerEntryType, PayoutStatus

if TYPE_CHECKING:
    from escrow.adapters import PaymentGateway, PreferenceResult, ProviderRefundResult
    from escrow.services.payout_dispatcher import PayoutDispatcher

logger = logging.getLogger(__name__)


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class DepositResult:
    """
    Outcome of confirm_deposit.

    created is False when the deposit had already been recorded and the
    call was an idempotent replay.
    """

    entry: LedgerEntry
    created: bool


@dataclass
class ReleaseResult:
    entry: LedgerEntry
    fees: FeeBreakdown


@dataclass
class RefundResult:
    entry: LedgerEntry
    provider_response: dict[str, Any]


# =============================================================================
# Escrow Service
# =============================================================================


class EscrowService:
    """
    Orchestrates contract creation, deposit, release and refund.

    Dependencies are passed in; EscrowService.default() wires the
    configured payment gateway and payout dispatcher and makes the
    service responsible for closing them. Injected dependencies stay
    owned by the caller.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        dispatcher: PayoutDispatcher | None = None,
    ) -> None:
        self.gateway = gateway
        self.dispatcher = dispatcher
        self._owns_dependencies = False

    @classmethod
    def default(cls) -> EscrowService:
        """Service wired to the configured gateway; close() releases it."""
        from escrow.services.payout_dispatcher import PayoutDispatcher

        service = cls(gateway=get_payment_gateway(), dispatcher=PayoutDispatcher())
        service._owns_dependencies = True
        return service

    def close(self) -> None:
        if self._owns_dependencies:
            self.gateway.close()
            if self.dispatcher is not None:
                self.dispatcher.close()

    def __enter__(self) -> EscrowService:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # =========================================================================
    # Creation
    # =========================================================================

    def create_contract(
        self,
        client_id: str,
        worker_id: str,
        gross_amount_cents: int,
        platform_fee_pct: Decimal | str | None = None,
        currency: str | None = None,
        description: str = "",
        worker_payout_destination: str = "",
    ) -> Contract:
        """
        Create a contract in CREATED status.

        The platform fee percentage is captured now (ESCROW_PLATFORM_FEE_PERCENT
        unless given) and never changes afterwards.

        Raises:
            EscrowValidationError: Missing party, non-positive amount,
                percentage out of range
        """
        if not client_id or not worker_id:
            raise EscrowValidationError(
                "Both client_id and worker_id are required",
                details={"client_id": client_id, "worker_id": worker_id},
            )
        if (
            isinstance(gross_amount_cents, bool)
            or not isinstance(gross_amount_cents, int)
            or gross_amount_cents <= 0
        ):
            raise EscrowValidationError(
                "Gross amount must be a positive integer number of cents",
                details={"gross_amount_cents": gross_amount_cents},
            )

        if platform_fee_pct is None:
            platform_fee_pct = settings.ESCROW_PLATFORM_FEE_PERCENT
        try:
            pct = Decimal(str(platform_fee_pct)).quantize(Decimal("0.01"))
        except InvalidOperation:
            raise EscrowValidationError(
                "Platform fee percentage is not a number",
                details={"platform_fee_pct": str(platform_fee_pct)},
            )
        if pct < 0 or pct > 100:
            raise EscrowValidationError(
                "Platform fee percentage must be between 0 and 100",
                details={"platform_fee_pct": str(pct)},
            )

        contract = Contract.objects.create(
            client_id=client_id,
            worker_id=worker_id,
            gross_amount_cents=gross_amount_cents,
            applied_platform_fee_pct=pct,
            currency=(currency or settings.ESCROW_CURRENCY).upper(),
            description=description,
            worker_payout_destination=worker_payout_destination,
        )
        logger.info(
            "Contract created",
            extra={
                "contract_id": str(contract.id),
                "gross_amount_cents": gross_amount_cents,
                "applied_platform_fee_pct": str(pct),
            },
        )
        return contract

    def get_contract(self, contract_id: uuid.UUID | str) -> Contract:
        try:
            return Contract.objects.get(id=contract_id)
        except (Contract.DoesNotExist, DjangoValidationError, ValueError):
            raise ContractNotFoundError(
                f"Contract {contract_id} not found",
                details={"contract_id": str(contract_id)},
            )

    def _lock_contract(self, contract_id: uuid.UUID | str) -> Contract:
        """Load a contract with a row lock. Must run inside a transaction."""
        try:
            return Contract.objects.select_for_update().get(id=contract_id)
        except (Contract.DoesNotExist, DjangoValidationError, ValueError):
            raise ContractNotFoundError(
                f"Contract {contract_id} not found",
                details={"contract_id": str(contract_id)},
            )

    @staticmethod
    def _invalid_state(
        contract: Contract, operation: str, expected: str
    ) -> InvalidStateError:
        return InvalidStateError(
            f"Cannot {operation} contract in '{contract.escrow_status}' state",
            details={
                "contract_id": str(contract.id),
                "operation": operation,
                "current_status": contract.escrow_status,
                "expected_status": expected,
            },
        )

    @staticmethod
    def _save_transition(contract: Contract, operation: str) -> None:
        """
        Persist a transition.

        ConcurrentTransition means another writer moved the contract after
        we loaded it; that writer won.
        """
        try:
            contract.save()
        except ConcurrentTransition as e:
            raise InvalidStateError(
                f"Contract changed concurrently during {operation}",
                details={"contract_id": str(contract.id), "operation": operation},
            ) from e

    # =========================================================================
    # Deposit
    # =========================================================================

    def request_deposit(
        self, contract_id: uuid.UUID | str, return_url: str
    ) -> PreferenceResult:
        """
        Ask the provider for a payment preference for the gross amount.

        Does not change the escrow status; the deposit only counts once the
        provider's notification is reconciled.

        Raises:
            ContractNotFoundError: No such contract
            InvalidStateError: Contract is not CREATED
            ProviderError: The provider call failed
        """
        contract = self.get_contract(contract_id)
        if contract.escrow_status != EscrowStatus.CREATED:
            raise self._invalid_state(contract, "request deposit for", "created")

        preference = self.gateway.create_preference(
            contract_id=contract.id,
            amount_cents=contract.gross_amount_cents,
            currency=contract.currency,
            description=contract.description or f"Escrow for contract {contract.id}",
            return_url=return_url,
        )

        Contract.objects.filter(id=contract.id).update(
            preference_id=preference.preference_id
        )
        logger.info(
            "Deposit preference created",
            extra={
                "contract_id": str(contract.id),
                "preference_id": preference.preference_id,
            },
        )
        return preference

    def confirm_deposit(
        self,
        contract_id: uuid.UUID | str,
        provider_tx_id: str,
        provider_fee_cents: int,
    ) -> DepositResult:
        """
        Record a reconciled deposit and move the contract to HELD.

        Idempotent per provider_tx_id: a replay returns the existing DEPOSIT
        entry and changes nothing.

        Raises:
            ContractNotFoundError: No such contract
            InvalidStateError: Contract is not CREATED
            EscrowValidationError: Missing tx id or negative fee
        """
        if not provider_tx_id:
            raise EscrowValidationError("provider_tx_id is required")
        if provider_fee_cents < 0:
            raise EscrowValidationError(
                "Provider fee must not be negative",
                details={"provider_fee_cents": provider_fee_cents},
            )

        try:
            with transaction.atomic():
                contract = self._lock_contract(contract_id)

                existing = LedgerService.get_deposit(provider_tx_id)
                if existing is not None:
                    logger.info(
                        "Deposit already recorded, replay ignored",
                        extra={
                            "contract_id": str(contract.id),
                            "provider_tx_id": provider_tx_id,
                            "ledger_entry_id": str(existing.id),
                        },
                    )
                    return DepositResult(entry=existing, created=False)

                if contract.escrow_status != EscrowStatus.CREATED:
                    raise self._invalid_state(contract, "confirm deposit for", "created")

                if provider_fee_cents > contract.gross_amount_cents:
                    raise EscrowValidationError(
                        "Provider fee exceeds the deposit",
                        details={
                            "contract_id": str(contract.id),
                            "provider_fee_cents": provider_fee_cents,
                            "gross_amount_cents": contract.gross_amount_cents,
                        },
                    )

                entry, created = LedgerService.record_entry(
                    RecordEntryParams(
                        contract_id=contract.id,
                        entry_type=LedgerEntryType.DEPOSIT,
                        amount_cents=contract.gross_amount_cents,
                        currency=contract.currency,
                        provider_fee_cents=provider_fee_cents,
                        net_amount_cents=contract.gross_amount_cents
                        - provider_fee_cents,
                        provider_tx_id=provider_tx_id,
                        idempotency_key=deposit_key(provider_tx_id),
                    )
                )
                if not created:
                    return DepositResult(entry=entry, created=False)

                try:
                    contract.hold(
                        provider_tx_id=provider_tx_id,
                        provider_fee_cents=provider_fee_cents,
                    )
                except TransitionNotAllowed as e:
                    raise self._invalid_state(
                        contract, "confirm deposit for", "created"
                    ) from e
                self._save_transition(contract, "confirm_deposit")
        except IntegrityError:
            # Lost the insert race on the deposit's unique constraints
            entry = LedgerService.get_deposit(provider_tx_id)
            if entry is None:
                raise
            return DepositResult(entry=entry, created=False)

        logger.info(
            "Deposit confirmed, funds held",
            extra={
                "contract_id": str(contract.id),
                "provider_tx_id": provider_tx_id,
                "provider_fee_cents": provider_fee_cents,
                "ledger_entry_id": str(entry.id),
            },
        )
        return DepositResult(entry=entry, created=True)

    # =========================================================================
    # Release
    # =========================================================================

    def release(self, contract_id: uuid.UUID | str) -> ReleaseResult:
        """
        Release held funds to the worker.

        Fees are computed from the captured percentage and the provider fee
        recorded at deposit. The RELEASE entry and the status change commit
        together; the payout job is enqueued only after that commit.

        Raises:
            ContractNotFoundError: No such contract
            InvalidStateError: Contract is not HELD (or lost a race)
            FeeOverrunError: Fees exceed the gross amount
        """
        with transaction.atomic():
            contract = self._lock_contract(contract_id)
            if contract.escrow_status != EscrowStatus.HELD:
                raise self._invalid_state(contract, "release", "held")

            fees = compute_fees(
                gross_cents=contract.gross_amount_cents,
                platform_fee_pct=contract.applied_platform_fee_pct,
                flat_adjustment_cents=0,
                provider_fee_cents=contract.provider_fee_cents,
            )

            try:
                contract.release(fees)
            except TransitionNotAllowed as e:
                raise self._invalid_state(contract, "release", "held") from e
            self._save_transition(contract, "release")

            entry, created = LedgerService.record_entry(
                RecordEntryParams(
                    contract_id=contract.id,
                    entry_type=LedgerEntryType.RELEASE,
                    amount_cents=fees.gross_amount_cents,
                    currency=contract.currency,
                    platform_fee_cents=fees.platform_fee_cents,
                    provider_fee_cents=fees.provider_fee_cents,
                    net_amount_cents=fees.net_amount_cents,
                    idempotency_key=release_key(contract.id),
                    payout_status=PayoutStatus.PENDING,
                )
            )
            if not created:
                raise self._invalid_state(contract, "release", "held")

            entry_id = entry.id
            transaction.on_commit(lambda: self._enqueue_payout(entry_id))

        logger.info(
            "Contract released",
            extra={
                "contract_id": str(contract.id),
                "ledger_entry_id": str(entry.id),
                **fees.as_dict(),
            },
        )
        return ReleaseResult(entry=entry, fees=fees)

    def _enqueue_payout(self, entry_id: uuid.UUID) -> None:
        """
        Hand the committed release to the payout queue.

        A failure here is not the caller's failure: the release is already
        committed and the recovery sweep picks up the PENDING entry.
        """
        if self.dispatcher is None:
            logger.warning(
                "No payout dispatcher configured, leaving release for the sweep",
                extra={"ledger_entry_id": str(entry_id)},
            )
            return
        try:
            entry = LedgerEntry.objects.get(id=entry_id)
            self.dispatcher.enqueue(self.dispatcher.build_job(entry))
        except Exception as e:
            logger.error(
                f"Payout enqueue failed, recovery sweep will retry: {e}",
                extra={"ledger_entry_id": str(entry_id)},
                exc_info=True,
            )

    # =========================================================================
    # Refund
    # =========================================================================

    def refund(
        self, contract_id: uuid.UUID | str, provider_tx_id: str
    ) -> RefundResult:
        """
        Refund the deposit to the client.

        The row lock is held across the provider call, so a release cannot
        slip in between. If the provider fails the transaction rolls back,
        the contract stays HELD and the provider error propagates.

        Raises:
            ContractNotFoundError: No such contract
            EscrowValidationError: provider_tx_id missing or not the deposit's
            InvalidStateError: Contract is not HELD
            ProviderError: The refund call failed
        """
        if not provider_tx_id:
            raise EscrowValidationError(
                "provider_tx_id is required to refund",
                details={"contract_id": str(contract_id)},
            )

        with transaction.atomic():
            contract = self._lock_contract(contract_id)
            if contract.escrow_status != EscrowStatus.HELD:
                raise self._invalid_state(contract, "refund", "held")
            if provider_tx_id != contract.deposit_provider_tx_id:
                raise EscrowValidationError(
                    "provider_tx_id does not match the contract's deposit",
                    details={
                        "contract_id": str(contract.id),
                        "provider_tx_id": provider_tx_id,
                    },
                )

            provider_refund = self.gateway.refund(
                provider_tx_id,
                amount_cents=contract.gross_amount_cents,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    "refund", contract.id
                ),
            )

            try:
                contract.refund()
            except TransitionNotAllowed as e:
                raise self._invalid_state(contract, "refund", "held") from e
            self._save_transition(contract, "refund")

            entry, _ = LedgerService.record_entry(
                RecordEntryParams(
                    contract_id=contract.id,
                    entry_type=LedgerEntryType.REFUND,
                    amount_cents=contract.gross_amount_cents,
                    currency=contract.currency,
                    platform_fee_cents=0,
                    provider_fee_cents=contract.provider_fee_cents,
                    net_amount_cents=0,
                    provider_tx_id=provider_tx_id,
                    idempotency_key=refund_key(contract.id),
                    metadata={"provider_refund": provider_refund.to_dict()},
                )
            )

        logger.info(
            "Contract refunded",
            extra={
                "contract_id": str(contract.id),
                "provider_tx_id": provider_tx_id,
                "provider_refund_id": provider_refund.id,
                "ledger_entry_id": str(entry.id),
            },
        )
        return RefundResult(entry=entry, provider_response=_refund_response(provider_refund))


def _refund_response(provider_refund: ProviderRefundResult) -> dict[str, Any]:
    return {**provider_refund.to_dict(), "raw": provider_refund.raw_response}
