"""
Tests for the Stripe gateway.

Stripe SDK calls are patched and return plain dicts, which the adapter
accepts the same way it accepts StripeObjects.
"""

import pytest
import stripe

from escrow.exceptions import (
    ProviderRejectedError,
    ProviderUnavailableError,
    WebhookSignatureError,
)
from escrow.state_machines import PaymentStatus


@pytest.fixture
def payment_intent():
    return {
        "id": "pi_123",
        "status": "succeeded",
        "amount": 100000,
        "amount_received": 100000,
        "currency": "brl",
        "metadata": {"contract_id": "contract-1", "external_reference": "contract-1"},
        "latest_charge": {
            "id": "ch_1",
            "refunded": False,
            "balance_transaction": {"id": "txn_1", "fee": 3000},
        },
    }


@pytest.fixture
def retrieve(mocker, payment_intent):
    return mocker.patch.object(stripe.PaymentIntent, "retrieve", return_value=payment_intent)


class TestCreatePreference:
    def test_checkout_session(self, mocker, stripe_gateway):
        create = mocker.patch.object(
            stripe.checkout.Session,
            "create",
            return_value={
                "id": "cs_1",
                "url": "https://checkout.stripe.test/cs_1",
                "client_reference_id": "contract-1",
            },
        )

        result = stripe_gateway.create_preference(
            contract_id="contract-1",
            amount_cents=100000,
            currency="BRL",
            description="Logo design",
            return_url="https://app.test/return",
        )

        kwargs = create.call_args.kwargs
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 100000
        assert kwargs["line_items"][0]["price_data"]["currency"] == "brl"
        assert kwargs["payment_intent_data"]["metadata"]["contract_id"] == "contract-1"
        assert kwargs["idempotency_key"] == "preference:contract-1:100000"
        assert result.preference_id == "cs_1"
        assert result.init_point == "https://checkout.stripe.test/cs_1"
        assert result.external_reference == "contract-1"


class TestGetPayment:
    def test_normalizes_intent(self, stripe_gateway, retrieve):
        payment = stripe_gateway.get_payment("pi_123")

        retrieve.assert_called_once_with(
            "pi_123",
            api_key="sk_test_123",
            expand=["latest_charge.balance_transaction"],
        )
        assert payment.provider_tx_id == "pi_123"
        assert payment.status == PaymentStatus.APPROVED
        assert payment.amount_cents == 100000
        assert payment.provider_fee_cents == 3000
        assert payment.external_reference == "contract-1"
        assert payment.currency == "BRL"

    def test_refunded_charge(self, stripe_gateway, retrieve, payment_intent):
        payment_intent["latest_charge"]["refunded"] = True

        assert stripe_gateway.get_payment("pi_123").status == PaymentStatus.REFUNDED

    def test_unexpanded_charge_has_no_fee(self, stripe_gateway, retrieve, payment_intent):
        payment_intent["latest_charge"] = "ch_1"

        assert stripe_gateway.get_payment("pi_123").provider_fee_cents == 0


class TestVerifyNotification:
    @pytest.mark.parametrize(
        "event",
        [
            {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_123"}}},
            {
                "type": "checkout.session.completed",
                "data": {"object": {"id": "cs_1", "payment_intent": "pi_123"}},
            },
            {
                "type": "charge.refunded",
                "data": {"object": {"id": "ch_1", "payment_intent": "pi_123"}},
            },
        ],
    )
    def test_payment_events_fetch_intent(self, stripe_gateway, retrieve, event):
        normalized = stripe_gateway.verify_notification(event)

        assert normalized.fetched is True
        assert normalized.provider_tx_id == "pi_123"
        assert normalized.status == PaymentStatus.APPROVED
        assert retrieve.call_args.args == ("pi_123",)

    def test_other_events_unknown(self, stripe_gateway, retrieve):
        normalized = stripe_gateway.verify_notification(
            {
                "type": "customer.created",
                "data": {"object": {"metadata": {"external_reference": "contract-1"}}},
            }
        )

        retrieve.assert_not_called()
        assert normalized.status == PaymentStatus.UNKNOWN
        assert normalized.provider_tx_id is None
        assert normalized.external_reference == "contract-1"


class TestRefund:
    def test_refund(self, mocker, stripe_gateway):
        create = mocker.patch.object(
            stripe.Refund,
            "create",
            return_value={
                "id": "re_1",
                "status": "succeeded",
                "payment_intent": "pi_123",
                "amount": 100000,
            },
        )

        refund = stripe_gateway.refund("pi_123", amount_cents=100000, idempotency_key="refund:k")

        create.assert_called_once_with(
            api_key="sk_test_123",
            idempotency_key="refund:k",
            payment_intent="pi_123",
            amount=100000,
        )
        assert refund.id == "re_1"
        assert refund.provider_tx_id == "pi_123"
        assert refund.amount_cents == 100000


class TestCreatePayout:
    def test_transfer(self, mocker, stripe_gateway):
        create = mocker.patch.object(
            stripe.Transfer,
            "create",
            return_value={"id": "tr_1", "amount": 90000, "destination": "acct_1"},
        )

        payout = stripe_gateway.create_payout(
            destination="acct_1",
            amount_cents=90000,
            currency="BRL",
            idempotency_key="payout-1",
            metadata={"contract_id": "contract-1"},
        )

        kwargs = create.call_args.kwargs
        assert kwargs["currency"] == "brl"
        assert kwargs["idempotency_key"] == "payout-1"
        assert kwargs["metadata"] == {"contract_id": "contract-1"}
        assert payout.id == "tr_1"
        assert payout.amount_cents == 90000
        assert payout.destination == "acct_1"

    def test_missing_destination_rejected(self, mocker, stripe_gateway):
        create = mocker.patch.object(stripe.Transfer, "create")

        with pytest.raises(ProviderRejectedError) as exc_info:
            stripe_gateway.create_payout("", 90000, "BRL", "payout-1")

        assert exc_info.value.provider_code == "missing_destination"
        create.assert_not_called()


class TestErrorTranslation:
    def test_rate_limit_retried_then_unavailable(self, mocker, stripe_gateway, no_sleep):
        retrieve = mocker.patch.object(
            stripe.PaymentIntent,
            "retrieve",
            side_effect=stripe.RateLimitError("Too many requests"),
        )

        with pytest.raises(ProviderUnavailableError) as exc_info:
            stripe_gateway.get_payment("pi_123")

        assert retrieve.call_count == 2
        assert exc_info.value.provider_code == "rate_limit"
        no_sleep.assert_called_once()

    def test_connection_error_recovers(self, mocker, stripe_gateway, payment_intent):
        mocker.patch.object(
            stripe.PaymentIntent,
            "retrieve",
            side_effect=[stripe.APIConnectionError("Network down"), payment_intent],
        )

        assert stripe_gateway.get_payment("pi_123").provider_tx_id == "pi_123"

    def test_card_error_rejected(self, mocker, stripe_gateway):
        mocker.patch.object(
            stripe.Refund,
            "create",
            side_effect=stripe.CardError("Card declined", None, "card_declined"),
        )

        with pytest.raises(ProviderRejectedError) as exc_info:
            stripe_gateway.refund("pi_123")

        assert exc_info.value.provider_code == "card_declined"

    def test_invalid_request_not_retried(self, mocker, stripe_gateway):
        retrieve = mocker.patch.object(
            stripe.PaymentIntent,
            "retrieve",
            side_effect=stripe.InvalidRequestError(
                "No such payment_intent", "intent", code="resource_missing"
            ),
        )

        with pytest.raises(ProviderRejectedError):
            stripe_gateway.get_payment("pi_missing")

        assert retrieve.call_count == 1

    def test_authentication_error_rejected(self, mocker, stripe_gateway):
        mocker.patch.object(
            stripe.PaymentIntent,
            "retrieve",
            side_effect=stripe.AuthenticationError("Invalid API key"),
        )

        with pytest.raises(ProviderRejectedError) as exc_info:
            stripe_gateway.get_payment("pi_123")

        assert exc_info.value.provider_code == "authentication_error"


class TestVerifySignature:
    def test_valid(self, mocker, stripe_gateway):
        construct = mocker.patch.object(stripe.Webhook, "construct_event")

        stripe_gateway.verify_signature(b"{}", {"Stripe-Signature": "t=1,v1=abc"})

        construct.assert_called_once_with(b"{}", "t=1,v1=abc", "whsec_test")

    def test_invalid(self, mocker, stripe_gateway):
        mocker.patch.object(
            stripe.Webhook,
            "construct_event",
            side_effect=stripe.SignatureVerificationError("bad signature", "t=1,v1=abc"),
        )

        with pytest.raises(WebhookSignatureError):
            stripe_gateway.verify_signature(b"{}", {"Stripe-Signature": "t=1,v1=abc"})

    def test_missing_header(self, stripe_gateway):
        with pytest.raises(WebhookSignatureError):
            stripe_gateway.verify_signature(b"{}", {})
