"""
Simulated payout gateway for development and tests.

No money moves. The payout id is derived from the idempotency key, so a
retried attempt gets back the id of the first one, the way a real
provider honours an idempotency key.
"""

from __future__ import annotations

import uuid

from escrow.adapters.base import PayoutGateway, PayoutResult
from escrow.exceptions import ProviderRejectedError
from escrow.state_machines import Provider

SANDBOX_NAMESPACE = uuid.UUID("6f1c9a52-3f0e-4a57-9a2b-5d0c2f7e8b41")


class SandboxPayoutGateway(PayoutGateway):
    provider_name = Provider.SANDBOX

    def create_payout(
        self,
        destination: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> PayoutResult:
        if amount_cents <= 0:
            raise ProviderRejectedError(
                "Payout amount must be positive",
                provider=self.provider_name,
                provider_code="invalid_amount",
                details={"amount_cents": amount_cents},
            )

        payout_id = f"payout_{uuid.uuid5(SANDBOX_NAMESPACE, idempotency_key)}"
        self.get_logger().info(
            "Sandbox payout simulated",
            extra={
                "payout_id": payout_id,
                "destination": destination,
                "amount_cents": amount_cents,
                "currency": currency,
                "idempotency_key": idempotency_key,
            },
        )
        return PayoutResult(
            id=payout_id,
            status="paid",
            amount_cents=amount_cents,
            destination=destination or None,
            raw_response={"simulated": True, "metadata": metadata or {}},
        )
