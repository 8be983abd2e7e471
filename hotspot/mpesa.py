"""
Safaricom Daraja (M-Pesa Express) API Integration
Handles STK push initiation and STK push status queries
"""

import base64
import logging
from datetime import datetime, timedelta

import requests
from django.conf import settings

from .utils import mask_phone_number

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"


def _result_code(value):
    """Daraja sends ResultCode as either "0" or 0."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DarajaAPI:
    """
    Daraja API client for Lipa na M-Pesa Online (STK push).

    Methods return ``{"success": bool, ...}`` dicts and never raise.
    """

    def __init__(self, consumer_key=None, consumer_secret=None, shortcode=None,
                 passkey=None, callback_url=None, environment=None, timeout=None):
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY
        self.consumer_secret = consumer_secret or settings.MPESA_CONSUMER_SECRET
        self.shortcode = str(shortcode or settings.MPESA_SHORTCODE)
        self.passkey = passkey or settings.MPESA_PASSKEY
        self.callback_url = callback_url or settings.MPESA_CALLBACK_URL
        self.environment = environment or settings.MPESA_ENV
        self.timeout = timeout or settings.MPESA_VERIFY_TIMEOUT
        self.base_url = (
            PRODUCTION_BASE_URL
            if self.environment == "production"
            else SANDBOX_BASE_URL
        )
        self.token = None
        self.token_expires_at = None

    def get_access_token(self):
        """
        Generate OAuth bearer token (client credentials).
        Token is valid for 1 hour from issuance.
        """
        if not self.consumer_key or not self.consumer_secret:
            logger.error(
                "M-Pesa credentials not configured. "
                "Set MPESA_CONSUMER_KEY and MPESA_CONSUMER_SECRET in environment."
            )
            return None

        # Check if we have a valid cached token
        if self.token and self.token_expires_at:
            if datetime.now() < self.token_expires_at:
                return self.token

        url = f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"

        try:
            response = requests.get(
                url,
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            token = response.json().get("access_token")
            if not token:
                logger.error("Daraja token response did not include access_token")
                return None

            self.token = token
            # Token expires in 1 hour, cache it for 55 minutes to be safe
            self.token_expires_at = datetime.now() + timedelta(minutes=55)
            return self.token

        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"Failed to get M-Pesa access token: {e}")
            return None

    def generate_password(self, timestamp=None):
        """Password = base64(shortcode + passkey + timestamp)"""
        timestamp = timestamp or datetime.now().strftime("%Y%m%d%H%M%S")
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode(), timestamp

    def initiate_stk_push(self, phone_number, amount, account_reference,
                          description="Qonnect WiFi"):
        """
        Send the STK push prompt to the customer's phone.

        Returns:
            dict: {"success": True, "checkout_request_id", "merchant_request_id"}
            or {"success": False, "message"}
        """
        token = self.get_access_token()
        if not token:
            return {"success": False, "message": "Failed to authenticate with M-Pesa"}

        password, timestamp = self.generate_password()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": str(account_reference)[:12],
            "TransactionDesc": description,
        }
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = requests.post(
                f"{self.base_url}/mpesa/stkpush/v1/processrequest",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except requests.exceptions.RequestException as e:
            if e.response is not None:
                logger.error(f"Daraja STK push response: {e.response.text}")
            logger.error(f"STK push failed for {mask_phone_number(phone_number)}: {e}")
            return {"success": False, "message": f"Failed to initiate payment: {e}"}
        except ValueError as e:
            logger.error(f"STK push returned invalid JSON: {e}")
            return {"success": False, "message": "Invalid response from M-Pesa"}

        checkout_request_id = result.get("CheckoutRequestID")
        if _result_code(result.get("ResponseCode")) != 0 or not checkout_request_id:
            logger.error(f"STK push rejected: {result}")
            return {
                "success": False,
                "message": result.get("ResponseDescription")
                or result.get("errorMessage")
                or "M-Pesa returned no CheckoutRequestID",
            }

        logger.info(
            f"📲 STK push sent to {mask_phone_number(phone_number)}: {checkout_request_id}"
        )
        return {
            "success": True,
            "checkout_request_id": checkout_request_id,
            "merchant_request_id": result.get("MerchantRequestID"),
            "message": result.get("CustomerMessage", "STK push sent"),
        }

    def query_stk_status(self, checkout_request_id):
        """
        Ask Daraja directly whether the STK push was paid.

        Returns:
            dict: {"success": True, "result_code": 0, ...} only when the
            gateway confirms the payment; anything else is success False.
        """
        token = self.get_access_token()
        if not token:
            return {"success": False, "message": "Failed to authenticate with M-Pesa"}

        password, timestamp = self.generate_password()
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = requests.post(
                f"{self.base_url}/mpesa/stkpushquery/v1/query",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except requests.exceptions.Timeout:
            logger.error(f"⏱️ STK status query timed out for {checkout_request_id}")
            return {"success": False, "message": "Verification timed out"}
        except requests.exceptions.RequestException as e:
            logger.error(f"STK status query failed for {checkout_request_id}: {e}")
            return {"success": False, "message": f"Verification request failed: {e}"}
        except ValueError as e:
            logger.error(f"STK status query returned invalid JSON: {e}")
            return {"success": False, "message": "Invalid response from M-Pesa"}

        result_code = _result_code(result.get("ResultCode"))
        if result_code == 0:
            return {
                "success": True,
                "result_code": 0,
                "message": result.get("ResultDesc", ""),
                "data": result,
            }

        # 1032 = cancelled by user, 1 = insufficient funds / declined
        return {
            "success": False,
            "result_code": result_code,
            "message": result.get("ResultDesc")
            or result.get("errorMessage")
            or "Payment not completed",
            "data": result,
        }
