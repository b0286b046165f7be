from rest_framework import status as http_status
from rest_framework.views import APIView

from donations.api.responses import api_response
from donations.api.serializers import (
    DonationRequestSerializer,
    ReconciliationRequestSerializer,
    ScheduleExecutionLogSerializer,
    ScheduleRequestSerializer,
    ScheduleSerializer,
    TransactionSerializer,
)
from donations.container import get_container
from donations.domain.exceptions import (
    AccountNotFound,
    ConflictError,
    NotFoundError,
    ReconciliationInProgress,
    ScheduleNotFound,
    TransactionNotFound,
    ValidationError,
)
from donations.domain.services import ScheduleService, TransactionService
from donations.integrations.ledger_client import TransientLedgerError
from donations.tasks.ledger_reconciler import STATUS_CONFLICT


def invalid_body(serializer):
    return api_response(
        detail=serializer.errors,
        message="Invalid request body.",
        status_code=http_status.HTTP_400_BAD_REQUEST,
        data=None,
    )


def domain_error_response(exc):
    if isinstance(exc, ValidationError):
        return api_response(
            detail=str(exc),
            message="Invalid request.",
            status_code=http_status.HTTP_400_BAD_REQUEST,
            data=None,
        )
    if isinstance(exc, NotFoundError):
        return api_response(
            detail=str(exc),
            message="Resource not found.",
            status_code=http_status.HTTP_404_NOT_FOUND,
            data=None,
        )
    if isinstance(exc, ConflictError):
        return api_response(
            detail=str(exc),
            message="Request conflicts with an earlier request.",
            status_code=http_status.HTTP_409_CONFLICT,
            data=None,
        )
    raise exc


class DonationCreateAPIView(APIView):
    def post(self, request):
        idempotency_key = request.headers.get("Idempotency-Key")
        if not idempotency_key:
            return api_response(
                detail="Idempotency-Key header is required",
                message="Invalid donation request.",
                status_code=http_status.HTTP_400_BAD_REQUEST,
                data=None,
            )

        serializer = DonationRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_body(serializer)

        try:
            result = get_container().donations.create_donation(
                donor_public_key=serializer.validated_data["donor_public_key"],
                recipient=serializer.validated_data["recipient_public_key"],
                amount=serializer.validated_data["amount"],
                memo=serializer.validated_data["memo"],
                idempotency_key=idempotency_key,
            )
        except TransientLedgerError as exc:
            return api_response(
                detail=f"ledger temporarily unavailable: {exc.code}",
                message="Donation could not be submitted; retry with the same key.",
                status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
                data=None,
            )
        except (ValidationError, AccountNotFound, ConflictError) as exc:
            return domain_error_response(exc)

        payload = {"transaction": result.response.get("transaction")}
        status_code = result.status_code
        if status_code == http_status.HTTP_502_BAD_GATEWAY:
            detail = "Ledger rejected the donation."
            message = "Donation failed."
        elif result.replayed:
            detail = "Donation already processed for this idempotency key."
            message = "Donation request already accepted."
            if status_code == http_status.HTTP_201_CREATED:
                status_code = http_status.HTTP_200_OK
        else:
            detail = "Donation submitted."
            message = "Donation completed successfully."

        return api_response(
            detail=detail,
            message=message,
            status_code=status_code,
            data=payload,
        )


class DonationDetailAPIView(APIView):
    def get(self, request, transaction_id):
        try:
            tx = TransactionService.get(transaction_id)
        except TransactionNotFound as exc:
            return domain_error_response(exc)

        return api_response(
            detail="Transaction fetched.",
            message="Transaction retrieved successfully.",
            status_code=http_status.HTTP_200_OK,
            data={"transaction": TransactionSerializer(tx).data},
        )


class ScheduleCreateAPIView(APIView):
    def post(self, request):
        serializer = ScheduleRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_body(serializer)

        data = serializer.validated_data
        try:
            schedule = ScheduleService.create_schedule(
                data["donor_public_key"],
                data["recipient_public_key"],
                data["amount"],
                data["frequency"],
                start_at=data.get("start_at"),
                max_executions=data.get("max_executions"),
            )
        except (ValidationError, AccountNotFound) as exc:
            return domain_error_response(exc)

        return api_response(
            detail="Recurring donation created.",
            message="Recurring donation scheduled successfully.",
            status_code=http_status.HTTP_201_CREATED,
            data={"schedule": ScheduleSerializer(schedule).data},
        )


class ScheduleDetailAPIView(APIView):
    def get(self, request, schedule_id):
        try:
            schedule = ScheduleService.get(schedule_id)
        except ScheduleNotFound as exc:
            return domain_error_response(exc)

        logs = get_container().scheduler.get_execution_logs(schedule.id)
        return api_response(
            detail="Recurring donation fetched.",
            message="Recurring donation retrieved successfully.",
            status_code=http_status.HTTP_200_OK,
            data={
                "schedule": ScheduleSerializer(schedule).data,
                "recent_executions": ScheduleExecutionLogSerializer(logs, many=True).data,
            },
        )


class ScheduleStatusAPIView(APIView):
    status_action = None
    detail_text = None

    def post(self, request, schedule_id):
        handler = getattr(ScheduleService, f"{self.status_action}_schedule")
        try:
            schedule = handler(schedule_id)
        except (ValidationError, ScheduleNotFound) as exc:
            return domain_error_response(exc)

        return api_response(
            detail=self.detail_text,
            message=f"Recurring donation {schedule.status}.",
            status_code=http_status.HTTP_200_OK,
            data={"schedule": ScheduleSerializer(schedule).data},
        )


class ScheduleCancelAPIView(ScheduleStatusAPIView):
    status_action = "cancel"
    detail_text = "Recurring donation cancelled."


class SchedulePauseAPIView(ScheduleStatusAPIView):
    status_action = "pause"
    detail_text = "Recurring donation paused."


class ScheduleResumeAPIView(ScheduleStatusAPIView):
    status_action = "resume"
    detail_text = "Recurring donation resumed."


class ReconciliationAPIView(APIView):
    def post(self, request):
        serializer = ReconciliationRequestSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_body(serializer)

        run = get_container().reconciler.reconcile(
            serializer.validated_data.get("public_keys")
        )
        if run.status == STATUS_CONFLICT:
            return domain_error_response(
                ReconciliationInProgress("a reconciliation run is already in progress")
            )

        return api_response(
            detail=f"Reconciliation {run.status}.",
            message="Reconciliation run finished.",
            status_code=http_status.HTTP_202_ACCEPTED,
            data={"run": run.as_dict()},
        )


class StatusAPIView(APIView):
    def get(self, request):
        container = get_container()
        return api_response(
            detail="Worker status fetched.",
            message="Status retrieved successfully.",
            status_code=http_status.HTTP_200_OK,
            data={
                "scheduler": container.scheduler.get_status(),
                "reconciler": container.reconciler.get_status(),
                "idempotency": container.guard.get_stats(),
            },
        )
