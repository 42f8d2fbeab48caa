"""
Escrow app for holding client funds until work is approved.

This app handles:
- Contract creation and fee capture
- Deposits through a payment provider (checkout preference + webhook)
- Release to the worker, with an asynchronous payout
- Refund to the client through the provider

Usage:
    from escrow.services import EscrowService

    with EscrowService.default() as service:
        contract = service.create_contract(
            client_id="client-1", worker_id="worker-1", gross_amount_cents=100000
        )
        preference = service.request_deposit(contract.id, "https://example.com/done")
"""
