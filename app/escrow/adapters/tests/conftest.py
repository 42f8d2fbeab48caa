"""
Pytest fixtures for provider adapter tests.

Sections:
    - Transport Fixtures: requests.Session stand-in for Mercado Pago
    - Gateway Fixtures: adapters wired to the fake transport
    - Payload Fixtures: provider responses
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from escrow.adapters import MercadoPagoGateway, StripeGateway


def make_response(status_code=200, json_data=None):
    """Build a requests.Response-like mock."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    if json_data is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_data
    return response


# =============================================================================
# Transport Fixtures
# =============================================================================


@pytest.fixture
def no_sleep(mocker):
    """Skip backoff waits between retries."""
    return mocker.patch("escrow.adapters.base.time.sleep")


@pytest.fixture
def session():
    fake = MagicMock(spec=requests.Session)
    fake.headers = {}
    return fake


# =============================================================================
# Gateway Fixtures
# =============================================================================


@pytest.fixture
def mp_gateway(session, no_sleep):
    return MercadoPagoGateway(
        access_token="TEST-token",
        webhook_secret="mp-secret",
        base_url="https://api.mercadopago.test",
        session=session,
        max_retries=2,
    )


@pytest.fixture
def stripe_gateway(no_sleep):
    return StripeGateway(api_key="sk_test_123", webhook_secret="whsec_test", max_retries=1)


# =============================================================================
# Payload Fixtures
# =============================================================================


@pytest.fixture
def mp_payment():
    """Approved Mercado Pago payment of 1000.00 with a 30.00 fee."""
    return {
        "id": 123456789,
        "status": "approved",
        "status_detail": "accredited",
        "transaction_amount": Decimal("1000.00"),
        "currency_id": "BRL",
        "external_reference": "7b0f4b8e-3a56-4c8e-9d7e-0c6a1c5e2f10",
        "transaction_details": {
            "total_paid_amount": Decimal("1000.00"),
            "net_received_amount": Decimal("970.00"),
        },
        "fee_details": [{"type": "mercadopago_fee", "amount": Decimal("30.00")}],
    }
