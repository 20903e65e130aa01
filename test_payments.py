import hashlib
import hmac
import json
import time
import unittest
from decimal import Decimal
from unittest.mock import Mock, patch

import stripe

from database import Order
from errors import (
    GatewayDisabled, GatewayError, NotSuccessful, SignatureInvalid, UnknownMethod, UnrecognizedEvent
)
from payments import (
    CONTENT_URL, BalanceGateway, EPayGateway, PayRequest, StripeGateway, build_gateways, get_gateway
)
from tests import TEST_PAYMENT_CONFIG, make_panel

WEBHOOK_SECRET = TEST_PAYMENT_CONFIG["stripe"]["webhook_key"]


def stripe_signature(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header the way Stripe signs webhooks."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(order_no, amount_total, event_type="checkout.session.completed"):
    return json.dumps({
        "id": "evt_test_1",
        "object": "event",
        "type": event_type,
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "client_reference_id": order_no,
                "amount_total": amount_total,
                "payment_status": "paid",
            }
        },
    })


class TestEPayGateway(unittest.TestCase):
    def setUp(self):
        self.gateway = EPayGateway(TEST_PAYMENT_CONFIG["epay"])

    def signed(self, **params):
        params["sign"] = self.gateway.sign({k: v for k, v in params.items() if v != ''})
        params["sign_type"] = "MD5"
        return params

    def test_sign_sorted_pairs_with_key(self):
        expected = hashlib.md5(b"a=1&b=2&c=3epay-secret").hexdigest()
        self.assertEqual(self.gateway.sign({"c": "3", "a": "1", "b": "2"}), expected)

    def test_pay_builds_signed_redirect(self):
        response = self.gateway.pay(PayRequest(
            order_no="NP1", amount=Decimal("12.5"), description="Order NP1",
            client_ip="10.0.0.1", method="alipay",
        ))
        self.assertEqual(response.content_type, CONTENT_URL)
        self.assertEqual(response.trade_no, "")
        self.assertTrue(response.pay_url.startswith("https://pay.example.com/submit.php?"))
        self.assertIn("money=12.50", response.pay_url)
        self.assertIn("out_trade_no=NP1", response.pay_url)
        self.assertIn("sign_type=MD5", response.pay_url)

    def test_pay_disabled(self):
        gateway = EPayGateway(dict(TEST_PAYMENT_CONFIG["epay"], enabled=False))
        with self.assertRaises(GatewayDisabled):
            gateway.pay(PayRequest("NP1", Decimal("1"), "x", "", "alipay"))

    def test_verify_valid(self):
        notification = self.gateway.verify(self.signed(
            out_trade_no="NP1", money="12.50", trade_status="TRADE_SUCCESS", param=""
        ))
        self.assertEqual(notification.order_no, "NP1")
        self.assertEqual(notification.amount, Decimal("12.50"))

    def test_verify_tampered(self):
        params = self.signed(out_trade_no="NP1", money="12.50", trade_status="TRADE_SUCCESS")
        params["out_trade_no"] = "NP2"
        with self.assertRaises(SignatureInvalid):
            self.gateway.verify(params)

    def test_verify_missing_signature(self):
        with self.assertRaises(SignatureInvalid):
            self.gateway.verify({"out_trade_no": "NP1", "trade_status": "TRADE_SUCCESS"})

    def test_verify_wrong_key(self):
        other = EPayGateway(dict(TEST_PAYMENT_CONFIG["epay"], key="other"))
        params = {"out_trade_no": "NP1", "money": "1.00", "trade_status": "TRADE_SUCCESS"}
        params["sign"] = other.sign(params)
        with self.assertRaises(SignatureInvalid):
            self.gateway.verify(params)

    def test_verify_not_successful(self):
        with self.assertRaises(NotSuccessful):
            self.gateway.verify(self.signed(out_trade_no="NP1", money="1.00", trade_status="WAIT_BUYER_PAY"))


class TestStripeGateway(unittest.TestCase):
    def setUp(self):
        self.gateway = StripeGateway(TEST_PAYMENT_CONFIG["stripe"])

    def test_verify_completed_session(self):
        payload = stripe_event("NP1", 5000)
        notification = self.gateway.verify({"payload": payload, "sig_header": stripe_signature(payload)})
        self.assertEqual(notification.order_no, "NP1")
        self.assertEqual(notification.amount, Decimal("50"))

    def test_verify_bad_signature(self):
        payload = stripe_event("NP1", 5000)
        with self.assertRaises(SignatureInvalid):
            self.gateway.verify({"payload": payload, "sig_header": stripe_signature(payload, secret="whsec_wrong")})

    def test_verify_stale_timestamp(self):
        payload = stripe_event("NP1", 5000)
        header = stripe_signature(payload, timestamp=int(time.time()) - 3600)
        with self.assertRaises(SignatureInvalid):
            self.gateway.verify({"payload": payload, "sig_header": header})

    def test_verify_other_event_type(self):
        payload = stripe_event("NP1", 5000, event_type="payment_intent.created")
        with self.assertRaises(UnrecognizedEvent) as ctx:
            self.gateway.verify({"payload": payload, "sig_header": stripe_signature(payload)})
        self.assertEqual(ctx.exception.event_type, "payment_intent.created")

    def test_verify_session_without_order_reference(self):
        payload = stripe_event(None, 5000)
        with self.assertRaises(UnrecognizedEvent):
            self.gateway.verify({"payload": payload, "sig_header": stripe_signature(payload)})

    @patch("payments.stripe.checkout.Session.create")
    def test_pay_creates_checkout_session(self, create):
        create.return_value = Mock(url="https://checkout.stripe.com/c/pay/cs_test_1", id="cs_test_1")

        response = self.gateway.pay(PayRequest("NP1", Decimal("50.00"), "Order NP1", "10.0.0.1", "stripe"))

        self.assertEqual(response.pay_url, "https://checkout.stripe.com/c/pay/cs_test_1")
        self.assertEqual(response.trade_no, "cs_test_1")
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs["api_key"], "sk_test_123")
        self.assertEqual(kwargs["client_reference_id"], "NP1")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 5000)

    @patch("payments.stripe.checkout.Session.create", side_effect=stripe.StripeError("card network down"))
    def test_pay_stripe_error(self, create):
        with self.assertRaises(GatewayError):
            self.gateway.pay(PayRequest("NP1", Decimal("50.00"), "Order NP1", "10.0.0.1", "stripe"))


class TestGatewayTable(unittest.TestCase):
    def test_epay_methods_share_one_adapter(self):
        gateways = build_gateways(TEST_PAYMENT_CONFIG, db=None)
        self.assertIs(get_gateway(gateways, "alipay"), get_gateway(gateways, "wxpay"))
        self.assertIsInstance(get_gateway(gateways, "stripe"), StripeGateway)
        self.assertIsInstance(get_gateway(gateways, "balance"), BalanceGateway)

    def test_unknown_method(self):
        with self.assertRaises(UnknownMethod) as ctx:
            get_gateway(build_gateways(TEST_PAYMENT_CONFIG, db=None), "paypal")
        self.assertEqual(ctx.exception.method, "paypal")

    def test_balance_never_verifies(self):
        gateway = build_gateways(TEST_PAYMENT_CONFIG, db=None)["balance"]
        with self.assertRaises(SignatureInvalid):
            gateway.verify({"out_trade_no": "NP1"})


class TestStripeOrderFlow(unittest.TestCase):
    def setUp(self):
        self.panel = make_panel()
        self.orders = self.panel.order_service
        plan = self.panel.db.create_plan(name="Standard", price=100, duration=30, transfer=10)
        self.user = self.panel.db.create_user(email="buyer@example.com")
        self.order = self.orders.create_order(self.user.id, plan.id)

    @patch("payments.stripe.checkout.Session.create")
    def test_pay_records_session_id(self, create):
        create.return_value = Mock(url="https://checkout.stripe.com/c/pay/cs_test_9", id="cs_test_9")
        self.orders.pay_order(self.order.order_no, "stripe", "10.0.0.1")

        order = self.orders.get_order(self.order.id)
        self.assertEqual(order.trade_no, "cs_test_9")
        self.assertEqual(order.pay_method, "stripe")
        self.assertEqual(order.status, Order.STATUS_PENDING)

    def test_bad_signature_then_valid_webhook(self):
        payload = stripe_event(self.order.order_no, 10000)
        forged = {"payload": payload, "sig_header": stripe_signature(payload, secret="whsec_forged")}

        with self.assertRaises(SignatureInvalid):
            self.orders.handle_payment_notify("stripe", forged)
        self.assertEqual(self.orders.get_order(self.order.id).status, Order.STATUS_PENDING)

        genuine = {"payload": payload, "sig_header": stripe_signature(payload)}
        self.assertIsNotNone(self.orders.handle_payment_notify("stripe", genuine))
        self.assertIsNone(self.orders.handle_payment_notify("stripe", genuine))

        self.assertEqual(self.orders.get_order(self.order.id).status, Order.STATUS_PAID)
        self.assertEqual(self.panel.db.get_user_by_id(self.user.id).transfer_enable, 10 * 1024 ** 3)

    def test_ignored_event_leaves_order_pending(self):
        payload = stripe_event(self.order.order_no, 10000, event_type="charge.refunded")
        result = self.orders.handle_payment_notify(
            "stripe", {"payload": payload, "sig_header": stripe_signature(payload)}
        )
        self.assertIsNone(result)
        self.assertEqual(self.orders.get_order(self.order.id).status, Order.STATUS_PENDING)

    def test_foreign_session_is_acknowledged(self):
        """Completed sessions created outside the panel are ignored"""
        payload = stripe_event(None, 10000)
        result = self.orders.handle_payment_notify(
            "stripe", {"payload": payload, "sig_header": stripe_signature(payload)}
        )
        self.assertIsNone(result)
        self.assertEqual(self.orders.get_order(self.order.id).status, Order.STATUS_PENDING)


if __name__ == '__main__':
    unittest.main()
