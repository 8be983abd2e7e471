"""
Tests for models, helpers and the callback structure
"""
from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.test import RequestFactory, SimpleTestCase, TestCase
from django.utils import timezone

from hotspot.audit import audit
from hotspot.callbacks import StkCallback
from hotspot.models import AuditEntry, PaymentRecord, PaymentStatus, User
from hotspot.packages import get_package, package_for_amount
from hotspot.utils import get_client_ip, get_peer_ip, mask_phone_number, normalize_phone_number

from .factories import make_payment, stk_callback


class PhoneNumberTest(SimpleTestCase):
    """Test phone number normalization"""

    def test_accepted_formats(self):
        for raw in ("254712345678", "+254712345678", "0712345678", "712345678", "0712 345 678"):
            self.assertEqual(normalize_phone_number(raw), "254712345678", raw)

    def test_rejected_formats(self):
        for raw in ("", None, "12345", "0812345678", "2547123456789", "255712345678"):
            with self.assertRaises(ValueError, msg=raw):
                normalize_phone_number(raw)

    def test_mask(self):
        self.assertEqual(mask_phone_number("254712345678"), "2547****5678")


class ClientIPTest(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()

    def test_first_forwarded_hop_wins(self):
        request = self.factory.get("/", HTTP_X_FORWARDED_FOR="196.201.214.200, 10.0.0.1")
        self.assertEqual(get_client_ip(request), "196.201.214.200")

    def test_invalid_header_falls_through(self):
        request = self.factory.get("/", HTTP_X_FORWARDED_FOR="garbage", REMOTE_ADDR="10.0.0.9")
        self.assertEqual(get_client_ip(request), "10.0.0.9")

    def test_peer_ip_ignores_forwarded_header_without_proxies(self):
        request = self.factory.get("/", HTTP_X_FORWARDED_FOR="196.201.214.200", REMOTE_ADDR="8.8.8.8")
        self.assertEqual(get_peer_ip(request), "8.8.8.8")

    def test_peer_ip_counts_trusted_hops_from_the_right(self):
        request = self.factory.get(
            "/", HTTP_X_FORWARDED_FOR="1.1.1.1, 196.201.214.200, 10.0.0.2", REMOTE_ADDR="10.0.0.3"
        )
        self.assertEqual(get_peer_ip(request, trusted_proxies=2), "196.201.214.200")

    def test_peer_ip_with_missing_hops_falls_back(self):
        request = self.factory.get("/", REMOTE_ADDR="10.0.0.3")
        self.assertEqual(get_peer_ip(request, trusted_proxies=1), "10.0.0.3")


class PackageTest(SimpleTestCase):
    def test_amount_lookup(self):
        self.assertEqual(package_for_amount(10).duration, timedelta(hours=1))
        self.assertEqual(package_for_amount("15.00").code, "4Hrs")
        self.assertEqual(package_for_amount(20.0).duration, timedelta(hours=12))
        self.assertEqual(package_for_amount(Decimal("30")).duration, timedelta(hours=24))

    def test_unknown_amount(self):
        for amount in (None, 25, "abc", 0):
            self.assertIsNone(package_for_amount(amount))

    def test_code_lookup(self):
        self.assertEqual(get_package("12Hrs").amount, Decimal("20"))
        self.assertIsNone(get_package("1Day"))


class StkCallbackTest(SimpleTestCase):
    def test_parse_success(self):
        callback = StkCallback.from_payload(stk_callback("ws_CO_1", amount=30))

        self.assertTrue(callback.is_success)
        self.assertEqual(callback.checkout_request_id, "ws_CO_1")
        self.assertEqual(callback.amount, Decimal("30"))
        self.assertEqual(callback.receipt_number, "QKX1234ABC")
        self.assertEqual(callback.phone_number, "254712345678")
        self.assertEqual(callback.transaction_date, "20240101120000")

    def test_parse_failure(self):
        callback = StkCallback.from_payload(stk_callback("ws_CO_1", result_code=1032))

        self.assertFalse(callback.is_success)
        self.assertEqual(callback.result_code, 1032)
        self.assertIsNone(callback.amount)

    def test_string_result_code(self):
        payload = stk_callback("ws_CO_1")
        payload["Body"]["stkCallback"]["ResultCode"] = "0"

        self.assertTrue(StkCallback.from_payload(payload).is_success)

    def test_numeric_fields_become_text(self):
        payload = stk_callback("ws_CO_1", result_code=1)
        payload["Body"]["stkCallback"]["CheckoutRequestID"] = 123456
        payload["Body"]["stkCallback"]["ResultDesc"] = 1

        callback = StkCallback.from_payload(payload)

        self.assertEqual(callback.checkout_request_id, "123456")
        self.assertEqual(callback.result_desc, "1")

    def test_boolean_checkout_request_id_is_rejected(self):
        payload = stk_callback("ws_CO_1")
        payload["Body"]["stkCallback"]["CheckoutRequestID"] = True

        with self.assertRaises(ValueError):
            StkCallback.from_payload(payload)

    def test_odd_amounts(self):
        callback = StkCallback("ws_CO_1", 0, metadata={"Amount": True})
        self.assertIsNone(callback.amount)
        callback.metadata["Amount"] = "thirty"
        self.assertIsNone(callback.amount)

    def test_malformed(self):
        for payload in (None, {}, {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}},
                        {"Body": {"stkCallback": {"CheckoutRequestID": "x"}}}):
            with self.assertRaises(ValueError):
                StkCallback.from_payload(payload)


class PaymentRecordTest(TestCase):
    """Test conditional status transitions"""

    def test_defaults(self):
        payment = make_payment()

        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertTrue(payment.transaction_id.startswith("QNT-"))
        self.assertFalse(payment.is_terminal)

    def test_transition_from_pending(self):
        payment = make_payment()

        self.assertTrue(payment.transition(PaymentStatus.COMPLETED, receipt_number="QKX1"))

        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(payment.receipt_number, "QKX1")
        self.assertIsNotNone(payment.terminal_at)
        self.assertTrue(payment.is_successful)

    def test_terminal_status_never_changes(self):
        payment = make_payment()
        payment.mark_failed(result_code=1032, result_desc="Request cancelled by user")

        self.assertFalse(payment.transition(PaymentStatus.COMPLETED))
        self.assertFalse(payment.mark_expired())

        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.FAILED)
        self.assertEqual(payment.result_code, 1032)

    def test_stale_instance_loses_race(self):
        payment = make_payment()
        stale = PaymentRecord.objects.get(pk=payment.pk)
        payment.mark_expired()

        self.assertFalse(stale.transition(PaymentStatus.COMPLETED))
        self.assertEqual(stale.status, PaymentStatus.PENDING)

    def test_grant_failure_follows_completed(self):
        payment = make_payment()
        payment.transition(PaymentStatus.COMPLETED)

        self.assertTrue(
            payment.transition(
                PaymentStatus.COMPLETED_BUT_ACCESS_GRANT_FAILED,
                allowed_from=(PaymentStatus.COMPLETED,),
            )
        )


class UserTest(TestCase):
    def test_touch_creates_and_refreshes(self):
        now = timezone.now()
        user = User.touch("254712345678", mac_address="AA:BB:CC:DD:EE:01", now=now)
        self.assertEqual(user.last_mac_address, "AA:BB:CC:DD:EE:01")

        User.objects.filter(pk=user.pk).update(status="inactive")
        again = User.touch("254712345678", now=now + timedelta(hours=1))

        self.assertEqual(again.pk, user.pk)
        self.assertEqual(again.status, "active")
        self.assertEqual(again.last_mac_address, "AA:BB:CC:DD:EE:01")
        self.assertEqual(User.objects.count(), 1)


class AuditTest(TestCase):
    def test_audit_serializes_details(self):
        entry = audit("payment_completed", amount=Decimal("30"), at=timezone.now())

        entry.refresh_from_db()
        self.assertEqual(entry.details["amount"], "30")
        self.assertIsInstance(entry.details["at"], str)

    def test_entries_are_append_only(self):
        entry = audit("payment_completed", transaction_id="QNT-1")
        entry.action = "something_else"

        with self.assertRaises(ValueError):
            entry.save()

    def test_audit_failure_does_not_raise(self):
        with mock.patch.object(AuditEntry.objects, "create", side_effect=RuntimeError("db down")):
            self.assertIsNone(audit("payment_completed"))
