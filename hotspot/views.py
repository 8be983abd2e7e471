"""
API views for Qonnect Hotspot Billing
"""

import logging
from datetime import timedelta

from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import APIException
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .admission import check_admission
from .audit import audit
from .models import PaymentRecord, PaymentStatus
from .mpesa import DarajaAPI
from .queue import ReconciliationQueue
from .security import check_callback_origin
from .serializers import (
    InitiatePaymentSerializer,
    PaymentStatusSerializer,
    StkCallbackEnvelopeSerializer,
)
from .utils import get_client_ip, mask_phone_number

logger = logging.getLogger(__name__)

DUPLICATE_SUBMISSION_WINDOW = timedelta(seconds=60)


@csrf_exempt
@api_view(["POST"])
@permission_classes([AllowAny])
def mpesa_callback(request):
    """
    M-Pesa STK push callback endpoint

    Only checks origin and shape, then hands the callback to the
    reconciliation queue. Safaricom always gets a 200 unless the origin
    is rejected, so it never retries a callback we already have.
    """
    origin = check_callback_origin(request)
    if origin.rejected:
        audit("callback_unauthorized_ip", ip_address=origin.client_ip)
        return Response(
            {"success": False, "error": "Unauthorized"},
            status=status.HTTP_403_FORBIDDEN,
        )

    try:
        raw_callback = request.data
    except APIException as e:
        raw_callback = None
        parse_error = str(e)
    else:
        parse_error = None

    serializer = StkCallbackEnvelopeSerializer(data=raw_callback)
    if parse_error or not serializer.is_valid():
        errors = parse_error or serializer.errors
        logger.error(f"❌ Invalid callback structure from {origin.client_ip}: {errors}")
        audit(
            "callback_invalid_structure",
            ip_address=origin.client_ip,
            errors=errors,
        )
        return Response({"success": True})

    stk = serializer.validated_data["Body"]["stkCallback"]
    checkout_request_id = stk["CheckoutRequestID"]
    logger.info(
        f"📥 Callback received: {checkout_request_id} "
        f"(ResultCode {stk['ResultCode']}) from {origin.client_ip}"
    )

    try:
        ReconciliationQueue().enqueue(
            checkout_request_id,
            {"correlation_id": checkout_request_id, "raw_callback": raw_callback},
        )
    except Exception as e:
        # The timeout sweep expires the payment if this callback is lost
        logger.error(f"❌ Failed to enqueue payment job {checkout_request_id}: {e}")
        audit(
            "callback_enqueue_failed",
            checkout_request_id=checkout_request_id,
            error=str(e),
        )

    return Response({"success": True})


@api_view(["POST"])
@permission_classes([AllowAny])
def initiate_payment(request):
    """
    Start an M-Pesa purchase of hotspot time.

    Validates the request, runs the admission check for the device,
    creates the pending payment and sends the STK push.
    """
    serializer = InitiatePaymentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    phone = data["phone"]
    package = data["package"]
    client_ip = data.get("ip_address") or get_client_ip(request)

    decision = check_admission(data["mac_address"], client_ip)
    if not decision.allowed:
        return Response(
            {"success": False, "error": decision.reason},
            status=status.HTTP_409_CONFLICT,
        )

    # Double-click protection: one purchase per phone per minute
    recent = PaymentRecord.objects.filter(
        phone_number=phone,
        status__in=[PaymentStatus.PENDING, PaymentStatus.COMPLETED],
        created_at__gte=timezone.now() - DUPLICATE_SUBMISSION_WINDOW,
    ).exists()
    if recent:
        return Response(
            {
                "success": False,
                "error": "A payment is already being processed for this number. "
                "Please wait for confirmation.",
            },
            status=status.HTTP_409_CONFLICT,
        )

    payment = PaymentRecord.objects.create(
        phone_number=phone,
        amount=package.amount,
        package_code=package.code,
        mac_address=decision.mac_address,
        client_ip=client_ip,
    )
    logger.info(
        f"📝 Payment created: {payment.transaction_id} for "
        f"{mask_phone_number(phone)} ({package.code})"
    )

    result = DarajaAPI().initiate_stk_push(
        phone, package.amount, payment.transaction_id
    )
    if not result.get("success"):
        payment.mark_failed(result_desc=str(result.get("message"))[:255])
        logger.error(f"❌ STK push failed for {payment.transaction_id}")
        return Response(
            {
                "success": False,
                "error": "Could not connect to payment service. Please try again.",
                "transaction_id": payment.transaction_id,
            },
            status=status.HTTP_502_BAD_GATEWAY,
        )

    PaymentRecord.objects.filter(pk=payment.pk).update(
        checkout_request_id=result["checkout_request_id"],
        merchant_request_id=result.get("merchant_request_id"),
    )

    return Response(
        {
            "success": True,
            "data": {
                "transaction_id": payment.transaction_id,
                "checkout_request_id": result["checkout_request_id"],
                "status": payment.status,
                "message": "Enter your M-Pesa PIN on your phone to complete payment",
            },
        },
        status=status.HTTP_201_CREATED,
    )


@api_view(["GET"])
@permission_classes([AllowAny])
def payment_status(request, transaction_id):
    """Polled by the captive portal while the customer confirms the STK push."""
    payment = get_object_or_404(PaymentRecord, transaction_id=transaction_id)
    return Response({"success": True, "data": PaymentStatusSerializer(payment).data})
