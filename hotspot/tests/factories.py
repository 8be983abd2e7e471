"""
Shared fixtures for hotspot tests
"""

from decimal import Decimal
from itertools import count

from hotspot.models import PaymentRecord

_seq = count(1)

DEFAULT_MAC = "AA:BB:CC:DD:EE:01"
DEFAULT_PHONE = "254712345678"


def make_payment(amount="30", package_code="24Hrs", mac_address=DEFAULT_MAC,
                 phone_number=DEFAULT_PHONE, checkout_request_id=None, **extra):
    n = next(_seq)
    return PaymentRecord.objects.create(
        phone_number=phone_number,
        amount=Decimal(amount),
        package_code=package_code,
        mac_address=mac_address,
        checkout_request_id=checkout_request_id or f"ws_CO_TEST_{n:06d}",
        client_ip="10.5.50.20",
        **extra,
    )


def stk_callback(checkout_request_id, result_code=0, amount=30,
                 receipt="QKX1234ABC", phone=DEFAULT_PHONE,
                 result_desc=None, include_amount=True):
    """Daraja STK push callback body."""
    body = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc
        or (
            "The service request is processed successfully."
            if result_code == 0
            else "Request cancelled by user"
        ),
    }
    if result_code == 0:
        items = [
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20240101120000},
            {"Name": "PhoneNumber", "Value": int(phone)},
        ]
        if include_amount:
            items.insert(0, {"Name": "Amount", "Value": amount})
        body["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": body}}


class FakeGateway:
    def __init__(self, result=None, exc=None):
        self.result = result if result is not None else {"success": True, "result_code": 0}
        self.exc = exc
        self.calls = []

    def query_stk_status(self, checkout_request_id):
        self.calls.append(checkout_request_id)
        if self.exc:
            raise self.exc
        return self.result


class FakeController:
    def __init__(self, grant_result=None, revoke_result=None):
        self.grant_result = grant_result or {"success": True, "message": "ok"}
        self.revoke_result = revoke_result or {"success": True, "message": "ok"}
        self.grants = []
        self.revokes = []

    def grant(self, mac_address, duration_label, correlation_id=None):
        self.grants.append((mac_address, duration_label, correlation_id))
        return self.grant_result

    def revoke(self, mac_address):
        self.revokes.append(mac_address)
        return self.revoke_result
