"""
Pytest fixtures for escrow tests.

Gateways are MagicMocks returning the normalized dataclasses, so services
are exercised without any provider traffic. Redis is replaced by a mock
for every test in this package (payout locks).

Usage:
    def test_release(escrow_service, held_contract):
        result = escrow_service.release(held_contract.id)
        assert result.fees.net_amount_cents == 90000
"""

from unittest.mock import MagicMock

import pytest
from rest_framework.test import APIClient

from escrow.adapters import (
    NormalizedNotification,
    PaymentGateway,
    PayoutGateway,
    PayoutResult,
    PreferenceResult,
    ProviderRefundResult,
)
from escrow.models import Contract
from escrow.services import EscrowService, PayoutDispatcher, Reconciler
from escrow.state_machines import PaymentStatus, Provider
from escrow.tests.factories import ContractFactory

DEPOSIT_TX_ID = "pay_123"
PROVIDER_FEE_CENTS = 3000


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """
    Mock Redis client behind DistributedLock.

    Locks are always granted and released unless a test changes the
    return values.
    """
    client = MagicMock()
    client.set.return_value = True
    client.eval.return_value = 1
    mocker.patch("escrow.locks.get_redis_connection", return_value=client)
    return client


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def staff_user(db, django_user_model):
    return django_user_model.objects.create_user(
        username="platform", password="testpass123"
    )


@pytest.fixture
def authenticated_client(api_client, staff_user):
    api_client.force_authenticate(user=staff_user)
    return api_client


# =============================================================================
# Gateway Fixtures
# =============================================================================


@pytest.fixture
def payment_gateway():
    """Mock payment gateway with approved-payment defaults."""
    gateway = MagicMock(spec=PaymentGateway)
    gateway.provider_name = Provider.MERCADOPAGO
    gateway.create_preference.side_effect = lambda **kwargs: PreferenceResult(
        preference_id="pref_123",
        init_point="https://mp.example/checkout/pref_123",
        external_reference=str(kwargs["contract_id"]),
        sandbox_init_point="https://sandbox.mp.example/checkout/pref_123",
    )
    gateway.refund.return_value = ProviderRefundResult(
        id="ref_1",
        status="approved",
        provider_tx_id=DEPOSIT_TX_ID,
        amount_cents=100000,
        raw_response={"id": "ref_1", "status": "approved"},
    )
    return gateway


@pytest.fixture
def payout_gateway():
    gateway = MagicMock(spec=PayoutGateway)
    gateway.provider_name = Provider.SANDBOX
    gateway.create_payout.side_effect = lambda **kwargs: PayoutResult(
        id=f"payout_{kwargs['idempotency_key']}",
        status="paid",
        amount_cents=kwargs["amount_cents"],
        destination=kwargs["destination"],
    )
    return gateway


@pytest.fixture
def dispatcher(payout_gateway):
    return PayoutDispatcher(gateway=payout_gateway)


@pytest.fixture
def escrow_service(payment_gateway, dispatcher):
    return EscrowService(gateway=payment_gateway, dispatcher=dispatcher)


@pytest.fixture
def reconciler(payment_gateway, escrow_service):
    return Reconciler(payment_gateway, escrow_service=escrow_service)


@pytest.fixture
def approved_notification():
    """Build the normalized notification the gateway returns for a contract."""

    def _build(contract, tx_id=DEPOSIT_TX_ID, status=PaymentStatus.APPROVED, **overrides):
        values = {
            "status": status,
            "provider_fee_cents": PROVIDER_FEE_CENTS,
            "provider_tx_id": tx_id,
            "external_reference": str(contract.id) if contract else None,
            "amount_cents": contract.gross_amount_cents if contract else None,
            "fetched": True,
        }
        values.update(overrides)
        return NormalizedNotification(**values)

    return _build


# =============================================================================
# Contract State Fixtures
# =============================================================================


@pytest.fixture
def contract(db):
    """CREATED contract: 1000.00 BRL, 7% platform fee."""
    return ContractFactory()


@pytest.fixture
def held_contract(contract, escrow_service):
    """HELD contract with a 30.00 provider fee recorded at deposit."""
    escrow_service.confirm_deposit(contract.id, DEPOSIT_TX_ID, PROVIDER_FEE_CENTS)
    return Contract.objects.get(id=contract.id)


@pytest.fixture
def released_contract(held_contract, escrow_service):
    """RELEASED contract whose payout was never enqueued (no on_commit run)."""
    escrow_service.release(held_contract.id)
    return Contract.objects.get(id=held_contract.id)
