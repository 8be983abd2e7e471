"""
Tests for the webhook gate and the payment API
"""
from decimal import Decimal
from datetime import timedelta
from unittest import mock

from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from hotspot.models import (
    AuditEntry,
    PaymentRecord,
    PaymentStatus,
    ReconciliationJob,
    SessionRecord,
    User,
)

from .factories import make_payment, stk_callback

SAFARICOM_IP = "196.201.214.200"


class CallbackGateTest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.url = reverse("mpesa_callback")

    def post(self, body, ip=SAFARICOM_IP, **kwargs):
        return self.client.post(self.url, body, format="json", REMOTE_ADDR=ip, **kwargs)

    def test_valid_callback_is_enqueued(self):
        body = stk_callback("ws_CO_GATE_1")

        response = self.post(body)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True})
        job = ReconciliationJob.objects.get(job_key="ws_CO_GATE_1")
        self.assertEqual(job.status, "queued")
        self.assertEqual(job.payload["correlation_id"], "ws_CO_GATE_1")
        self.assertEqual(job.payload["raw_callback"], body)

    def test_gate_does_not_touch_payment(self):
        payment = make_payment(checkout_request_id="ws_CO_GATE_2")

        self.post(stk_callback("ws_CO_GATE_2"))

        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertFalse(SessionRecord.objects.exists())

    def test_duplicate_callbacks_collapse_to_one_job(self):
        """Scenario F at the gate"""
        self.post(stk_callback("ws_CO_GATE_3"))
        self.post(stk_callback("ws_CO_GATE_3"))

        self.assertEqual(ReconciliationJob.objects.filter(job_key="ws_CO_GATE_3").count(), 1)

    def test_failed_payment_callback_needs_no_metadata(self):
        response = self.post(stk_callback("ws_CO_GATE_4", result_code=1032))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(ReconciliationJob.objects.filter(job_key="ws_CO_GATE_4").exists())

    def test_missing_amount_still_reaches_worker(self):
        self.post(stk_callback("ws_CO_GATE_5", include_amount=False))

        self.assertTrue(ReconciliationJob.objects.filter(job_key="ws_CO_GATE_5").exists())

    def test_malformed_body_is_dropped_with_200(self):
        for body in (
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "x", "ResultCode": "abc"}}},
        ):
            response = self.post(body)
            self.assertEqual(response.status_code, 200)

        self.assertFalse(ReconciliationJob.objects.exists())
        self.assertEqual(
            AuditEntry.objects.filter(action="callback_invalid_structure").count(), 4
        )

    def test_success_without_receipt_is_dropped(self):
        body = stk_callback("ws_CO_GATE_6")
        items = body["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
        body["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [
            item for item in items if item["Name"] != "MpesaReceiptNumber"
        ]

        response = self.post(body)

        self.assertEqual(response.status_code, 200)
        self.assertFalse(ReconciliationJob.objects.exists())

    def test_invalid_json_is_dropped_with_200(self):
        response = self.client.post(
            self.url, "{not json", content_type="application/json", REMOTE_ADDR=SAFARICOM_IP
        )

        self.assertEqual(response.status_code, 200)
        self.assertFalse(ReconciliationJob.objects.exists())

    @override_settings(DEBUG=False, MPESA_ENFORCE_IP_ALLOWLIST=True)
    def test_unknown_ip_rejected_in_production(self):
        response = self.post(stk_callback("ws_CO_GATE_7"), ip="8.8.8.8")

        self.assertEqual(response.status_code, 403)
        self.assertFalse(response.json()["success"])
        self.assertFalse(ReconciliationJob.objects.exists())
        entry = AuditEntry.objects.get(action="callback_unauthorized_ip")
        self.assertEqual(entry.details["ip_address"], "8.8.8.8")

    @override_settings(DEBUG=False, MPESA_ENFORCE_IP_ALLOWLIST=True)
    def test_forged_forwarded_header_is_rejected(self):
        response = self.post(
            stk_callback("ws_CO_GATE_8"),
            ip="8.8.8.8",
            HTTP_X_FORWARDED_FOR=SAFARICOM_IP,
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(ReconciliationJob.objects.exists())
        entry = AuditEntry.objects.get(action="callback_unauthorized_ip")
        self.assertEqual(entry.details["ip_address"], "8.8.8.8")

    @override_settings(
        DEBUG=False, MPESA_ENFORCE_IP_ALLOWLIST=True, MPESA_CALLBACK_TRUSTED_PROXIES=1
    )
    def test_safaricom_ip_from_trusted_proxy_is_accepted(self):
        response = self.post(
            stk_callback("ws_CO_GATE_8"),
            ip="10.0.0.1",
            HTTP_X_FORWARDED_FOR=f"8.8.8.8, {SAFARICOM_IP}",
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(ReconciliationJob.objects.filter(job_key="ws_CO_GATE_8").exists())

    @override_settings(
        DEBUG=False, MPESA_ENFORCE_IP_ALLOWLIST=True, MPESA_CALLBACK_TRUSTED_PROXIES=1
    )
    def test_client_supplied_hop_behind_proxy_is_rejected(self):
        response = self.post(
            stk_callback("ws_CO_GATE_8"),
            ip="10.0.0.1",
            HTTP_X_FORWARDED_FOR=f"{SAFARICOM_IP}, 8.8.8.8",
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(ReconciliationJob.objects.exists())

    @override_settings(MPESA_ENFORCE_IP_ALLOWLIST=False)
    def test_unknown_ip_allowed_when_not_enforced(self):
        response = self.post(stk_callback("ws_CO_GATE_9"), ip="8.8.8.8")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(ReconciliationJob.objects.filter(job_key="ws_CO_GATE_9").exists())

    def test_enqueue_failure_still_answers_200(self):
        with mock.patch(
            "hotspot.views.ReconciliationQueue.enqueue",
            side_effect=RuntimeError("database is locked"),
        ):
            response = self.post(stk_callback("ws_CO_GATE_10"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"success": True})
        entry = AuditEntry.objects.get(action="callback_enqueue_failed")
        self.assertEqual(entry.details["checkout_request_id"], "ws_CO_GATE_10")


class InitiatePaymentTest(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.url = reverse("initiate_payment")
        self.body = {
            "phone": "0712345678",
            "mac_address": "aa-bb-cc-dd-ee-01",
            "package": "24Hrs",
            "amount": "30",
        }

    @mock.patch("hotspot.views.DarajaAPI.initiate_stk_push")
    def test_creates_pending_payment(self, stk_push):
        stk_push.return_value = {
            "success": True,
            "checkout_request_id": "ws_CO_INIT_1",
            "merchant_request_id": "29115-1",
        }

        response = self.client.post(self.url, self.body, format="json")

        self.assertEqual(response.status_code, 201)
        data = response.json()["data"]
        payment = PaymentRecord.objects.get(transaction_id=data["transaction_id"])
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.phone_number, "254712345678")
        self.assertEqual(payment.mac_address, "AA:BB:CC:DD:EE:01")
        self.assertEqual(payment.amount, Decimal("30"))
        self.assertEqual(payment.checkout_request_id, "ws_CO_INIT_1")
        stk_push.assert_called_once_with("254712345678", Decimal("30"), payment.transaction_id)

    @mock.patch("hotspot.views.DarajaAPI.initiate_stk_push")
    def test_gateway_failure_marks_failed(self, stk_push):
        stk_push.return_value = {"success": False, "message": "Invalid access token"}

        response = self.client.post(self.url, self.body, format="json")

        self.assertEqual(response.status_code, 502)
        self.assertFalse(response.json()["success"])
        payment = PaymentRecord.objects.get()
        self.assertEqual(payment.status, PaymentStatus.FAILED)

    def test_amount_must_match_package(self):
        response = self.client.post(self.url, dict(self.body, amount="10"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])
        self.assertIn("amount", response.json()["errors"])
        self.assertFalse(PaymentRecord.objects.exists())

    def test_invalid_phone_rejected(self):
        response = self.client.post(self.url, dict(self.body, phone="12345"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("phone", response.json()["errors"])

    def test_multicast_mac_rejected(self):
        response = self.client.post(
            self.url, dict(self.body, mac_address="01:00:5E:00:00:01"), format="json"
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("mac_address", response.json()["errors"])

    def test_active_session_blocks_new_purchase(self):
        user = User.objects.create(phone_number="254712345678")
        SessionRecord.objects.create(
            user=user,
            mac_address="AA:BB:CC:DD:EE:01",
            expires_at=timezone.now() + timedelta(hours=1),
        )

        response = self.client.post(self.url, self.body, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertFalse(PaymentRecord.objects.exists())

    @mock.patch("hotspot.views.DarajaAPI.initiate_stk_push")
    def test_double_submission_blocked(self, stk_push):
        stk_push.return_value = {"success": True, "checkout_request_id": "ws_CO_INIT_2"}
        self.client.post(self.url, self.body, format="json")

        response = self.client.post(
            self.url, dict(self.body, mac_address="AA:BB:CC:DD:EE:02"), format="json"
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(PaymentRecord.objects.count(), 1)


class PaymentStatusViewTest(TestCase):
    def setUp(self):
        self.client = APIClient()

    def get_status(self, payment):
        url = reverse("payment_status", args=[payment.transaction_id])
        return self.client.get(url).json()["data"]

    def test_pending(self):
        data = self.get_status(make_payment())

        self.assertEqual(data["status"], "pending")
        self.assertTrue(data["awaiting"])
        self.assertFalse(data["successful"])
        self.assertEqual(data["display_status"], "pending")

    def test_completed(self):
        payment = make_payment()
        payment.transition(PaymentStatus.COMPLETED, receipt_number="QKX1")

        data = self.get_status(payment)

        self.assertTrue(data["successful"])
        self.assertEqual(data["display_status"], "success")

    def test_every_failure_state_is_not_successful(self):
        for status in (
            PaymentStatus.FAILED,
            PaymentStatus.FRAUD_DETECTED,
            PaymentStatus.VERIFICATION_FAILED,
            PaymentStatus.COMPLETED_BUT_ACCESS_GRANT_FAILED,
            PaymentStatus.EXPIRED,
        ):
            payment = make_payment()
            PaymentRecord.objects.filter(pk=payment.pk).update(status=status)

            data = self.get_status(payment)

            self.assertFalse(data["successful"], status)
            self.assertFalse(data["awaiting"], status)
            self.assertEqual(data["display_status"], "failed", status)

    def test_unknown_transaction_is_404(self):
        response = self.client.get(reverse("payment_status", args=["QNT-NOPE"]))

        self.assertEqual(response.status_code, 404)
        self.assertFalse(response.json()["success"])
