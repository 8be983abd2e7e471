"""
Typed view of a Daraja STK push callback.

The raw body is validated once at the gate (serializers.StkCallbackEnvelopeSerializer)
and travels through the queue untouched; the worker rebuilds this
structure from it.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


@dataclass
class StkCallback:
    checkout_request_id: str
    result_code: int
    result_desc: str = ""
    merchant_request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload):
        """
        Build from ``{"Body": {"stkCallback": {...}}}``.
        Raises ValueError when the payload is not an STK callback.
        """
        try:
            body = payload["Body"]["stkCallback"]
        except (KeyError, TypeError):
            raise ValueError("Missing Body.stkCallback")

        # The gate's CharField accepts numbers too
        checkout_request_id = body.get("CheckoutRequestID")
        if isinstance(checkout_request_id, (bool, dict, list)):
            raise ValueError("CheckoutRequestID must be a string")
        if checkout_request_id is not None:
            checkout_request_id = str(checkout_request_id).strip()
        if not checkout_request_id:
            raise ValueError("Missing CheckoutRequestID")

        try:
            result_code = int(body.get("ResultCode"))
        except (TypeError, ValueError):
            raise ValueError("ResultCode must be an integer")

        result_desc = body.get("ResultDesc")

        metadata = {}
        items = (body.get("CallbackMetadata") or {}).get("Item") or []
        for item in items:
            if isinstance(item, dict) and item.get("Name"):
                metadata[item["Name"]] = item.get("Value")

        return cls(
            checkout_request_id=checkout_request_id,
            result_code=result_code,
            result_desc=str(result_desc) if result_desc is not None else "",
            merchant_request_id=body.get("MerchantRequestID"),
            metadata=metadata,
        )

    @property
    def is_success(self):
        return self.result_code == 0

    @property
    def amount(self):
        """Paid amount as Decimal, None when absent or unparseable."""
        value = self.metadata.get("Amount")
        if value is None or isinstance(value, bool):
            return None
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None

    @property
    def receipt_number(self):
        value = self.metadata.get("MpesaReceiptNumber")
        return str(value) if value is not None else None

    @property
    def phone_number(self):
        value = self.metadata.get("PhoneNumber")
        return str(value) if value is not None else None

    @property
    def transaction_date(self):
        value = self.metadata.get("TransactionDate")
        return str(value) if value is not None else None
