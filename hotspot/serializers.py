"""
Serializers for API requests and responses
"""

from decimal import Decimal

from rest_framework import serializers

from .admission import InvalidMACAddress, validate_mac_format
from .models import PaymentRecord, PaymentStatus, UNSUCCESSFUL_STATUSES
from .packages import PACKAGES, get_package
from .utils import normalize_phone_number

REQUIRED_SUCCESS_ITEMS = ("MpesaReceiptNumber", "PhoneNumber")


def validate_phone_number_field(phone_number):
    """
    Validator for phone number fields in serializers
    """
    if not phone_number:
        raise serializers.ValidationError("Phone number is required")

    try:
        return normalize_phone_number(phone_number)
    except ValueError as e:
        raise serializers.ValidationError(f"Invalid phone number format: {e}")


def validate_mac_address_field(mac_address):
    try:
        return validate_mac_format(mac_address)
    except InvalidMACAddress as e:
        raise serializers.ValidationError(str(e))


# M-Pesa STK callback
# -------------------


class CallbackItemSerializer(serializers.Serializer):
    Name = serializers.CharField()
    Value = serializers.JSONField(required=False, allow_null=True)


class CallbackMetadataSerializer(serializers.Serializer):
    Item = CallbackItemSerializer(many=True)


class StkCallbackSerializer(serializers.Serializer):
    MerchantRequestID = serializers.CharField(required=False, allow_blank=True)
    CheckoutRequestID = serializers.CharField(max_length=100)
    ResultCode = serializers.IntegerField()
    ResultDesc = serializers.CharField(required=False, allow_blank=True)
    CallbackMetadata = CallbackMetadataSerializer(required=False)

    def validate(self, attrs):
        if attrs["ResultCode"] != 0:
            return attrs

        metadata = attrs.get("CallbackMetadata")
        if not metadata:
            raise serializers.ValidationError(
                {"CallbackMetadata": "Required for a successful payment"}
            )

        names = {item["Name"] for item in metadata["Item"]}
        missing = [name for name in REQUIRED_SUCCESS_ITEMS if name not in names]
        if missing:
            raise serializers.ValidationError(
                {"CallbackMetadata": f"Missing items: {', '.join(missing)}"}
            )
        return attrs


class StkCallbackBodySerializer(serializers.Serializer):
    stkCallback = StkCallbackSerializer()


class StkCallbackEnvelopeSerializer(serializers.Serializer):
    Body = StkCallbackBodySerializer()


# Payment initiation / status
# ---------------------------


class InitiatePaymentSerializer(serializers.Serializer):
    phone = serializers.CharField(max_length=20)
    mac_address = serializers.CharField(max_length=17)
    package = serializers.ChoiceField(choices=sorted(PACKAGES))
    amount = serializers.DecimalField(max_digits=10, decimal_places=2)
    ip_address = serializers.IPAddressField(required=False, allow_null=True)

    def validate_phone(self, value):
        """Validate and normalize phone number"""
        return validate_phone_number_field(value)

    def validate_mac_address(self, value):
        return validate_mac_address_field(value)

    def validate(self, attrs):
        package = get_package(attrs["package"])
        if Decimal(attrs["amount"]) != package.amount:
            raise serializers.ValidationError(
                {"amount": f"Package {package.code} costs KES {package.amount}"}
            )
        attrs["package"] = package
        return attrs


class PaymentStatusSerializer(serializers.ModelSerializer):
    successful = serializers.SerializerMethodField()
    awaiting = serializers.SerializerMethodField()
    display_status = serializers.SerializerMethodField()

    class Meta:
        model = PaymentRecord
        fields = [
            "transaction_id",
            "status",
            "successful",
            "awaiting",
            "display_status",
            "amount",
            "package_code",
            "receipt_number",
            "access_expires_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_successful(self, obj):
        return obj.status == PaymentStatus.COMPLETED

    def get_awaiting(self, obj):
        return obj.status == PaymentStatus.PENDING

    def get_display_status(self, obj):
        if obj.status == PaymentStatus.COMPLETED:
            return "success"
        if obj.status in UNSUCCESSFUL_STATUSES:
            return "failed"
        return "pending"
