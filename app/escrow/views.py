"""
ViewSets for the escrow API.

URL Structure:
    /api/v1/escrow/contracts/                          POST
    /api/v1/escrow/contracts/{id}/                     GET
    /api/v1/escrow/contracts/{id}/ledger/              GET
    /api/v1/escrow/contracts/{id}/escrow/deposit/      POST
    /api/v1/escrow/contracts/{id}/escrow/release/      POST
    /api/v1/escrow/contracts/{id}/escrow/refund/       POST

Design Decisions:
    - All state changes go through EscrowService
    - Domain errors are rendered with their to_dict() body and http_status:
      NotFound 404, InvalidState 409, validation 400, FeeOverrun 422,
      provider failures 502
    - Authorization beyond IsAuthenticated (who may release which
      contract) belongs to the calling platform
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema, extend_schema_view
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from core.exceptions import BaseApplicationError

from escrow.ledger import LedgerService
from escrow.models import Contract
from escrow.serializers import (
    ContractCreateSerializer,
    ContractSerializer,
    DepositRequestSerializer,
    LedgerEntrySerializer,
    PreferenceSerializer,
    RefundRequestSerializer,
    RefundResponseSerializer,
    ReleaseResponseSerializer,
)
from escrow.services import EscrowService

logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    404: OpenApiResponse(description="Contract not found"),
    409: OpenApiResponse(description="Operation not valid in the current escrow status"),
}


def error_response(error: BaseApplicationError) -> Response:
    if error.http_status >= 500:
        logger.error(
            f"Escrow operation failed: {error}",
            extra={"error_code": error.error_code},
        )
    return Response(error.to_dict(), status=error.http_status)


@extend_schema_view(
    create=extend_schema(
        operation_id="create_contract",
        summary="Create contract",
        tags=["Escrow - Contracts"],
        request=ContractCreateSerializer,
        responses={201: ContractSerializer},
    ),
    retrieve=extend_schema(
        operation_id="get_contract",
        summary="Get contract",
        tags=["Escrow - Contracts"],
    ),
)
class ContractViewSet(viewsets.GenericViewSet):
    """
    ViewSet for escrow contracts.

    create:
        Create a contract in CREATED status. The platform fee percentage
        is captured now.

    retrieve:
        Contract detail with fee split and escrow status.

    ledger:
        Ledger entries of the contract, oldest first.

    deposit / release / refund:
        Escrow operations.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = ContractSerializer
    queryset = Contract.objects.all()

    def get_escrow_service(self) -> EscrowService:
        return EscrowService.default()

    def create(self, request):
        serializer = ContractCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            with self.get_escrow_service() as service:
                contract = service.create_contract(
                    client_id=data["client_id"],
                    worker_id=data["worker_id"],
                    gross_amount_cents=data["gross_amount_cents"],
                    platform_fee_pct=data.get("platform_fee_pct"),
                    currency=data.get("currency"),
                    description=data.get("description", ""),
                    worker_payout_destination=data.get("worker_payout_destination", ""),
                )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(ContractSerializer(contract).data, status=status.HTTP_201_CREATED)

    def retrieve(self, request, pk=None):
        contract = self.get_object()
        return Response(self.get_serializer(contract).data)

    @extend_schema(
        operation_id="list_contract_ledger",
        summary="List ledger entries",
        tags=["Escrow - Contracts"],
        responses={200: LedgerEntrySerializer(many=True)},
    )
    @action(detail=True, methods=["get"])
    def ledger(self, request, pk=None):
        contract = self.get_object()
        entries = LedgerService.entries_for_contract(contract.id)
        return Response(LedgerEntrySerializer(entries, many=True).data)

    @extend_schema(
        operation_id="request_deposit",
        summary="Request deposit",
        description="Create a provider payment preference for the gross amount.",
        tags=["Escrow - Operations"],
        request=DepositRequestSerializer,
        responses={200: PreferenceSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"], url_path="escrow/deposit")
    def deposit(self, request, pk=None):
        serializer = DepositRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            with self.get_escrow_service() as service:
                preference = service.request_deposit(
                    pk, serializer.validated_data["return_url"]
                )
        except BaseApplicationError as e:
            return error_response(e)

        return Response(preference.to_dict())

    @extend_schema(
        operation_id="release_contract",
        summary="Release escrow",
        description="Release held funds to the worker and queue the payout.",
        tags=["Escrow - Operations"],
        request=None,
        responses={
            200: ReleaseResponseSerializer,
            422: OpenApiResponse(description="Fees exceed the gross amount"),
            **ERROR_RESPONSES,
        },
    )
    @action(detail=True, methods=["post"], url_path="escrow/release")
    def release(self, request, pk=None):
        try:
            with self.get_escrow_service() as service:
                result = service.release(pk)
        except BaseApplicationError as e:
            return error_response(e)

        return Response(
            {
                "release_tx_id": str(result.entry.id),
                "fees": result.fees.as_dict(),
            }
        )

    @extend_schema(
        operation_id="refund_contract",
        summary="Refund escrow",
        description="Refund the deposit to the client through the provider.",
        tags=["Escrow - Operations"],
        request=RefundRequestSerializer,
        responses={
            200: RefundResponseSerializer,
            502: OpenApiResponse(description="Provider refused or is unavailable"),
            **ERROR_RESPONSES,
        },
    )
    @action(detail=True, methods=["post"], url_path="escrow/refund")
    def refund(self, request, pk=None):
        serializer = RefundRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            with self.get_escrow_service() as service:
                result = service.refund(pk, serializer.validated_data["provider_tx_id"])
        except BaseApplicationError as e:
            return error_response(e)

        return Response(
            {
                "refund_tx_id": str(result.entry.id),
                "provider_response": result.provider_response,
            }
        )
