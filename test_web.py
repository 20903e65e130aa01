import unittest
from unittest.mock import AsyncMock, Mock

from aiohttp.test_utils import AioHTTPTestCase
from telegram.error import TelegramError

from database import Order, Plan
from notifier import AdminNotifier
from test_payments import stripe_event, stripe_signature
from tests import epay_params, make_panel
from web import create_app

NOTIFY_URL = "/api/v1/payment/notify/{}"


class TestPaymentNotifyEndpoint(AioHTTPTestCase):
    async def get_application(self):
        self.panel = make_panel()
        self.orders = self.panel.order_service
        self.plan = self.panel.db.create_plan(name="Standard", price=100, duration=30, transfer=10)
        self.user = self.panel.db.create_user(email="buyer@example.com")
        self.order = self.orders.create_order(self.user.id, self.plan.id)
        self.notifier = Mock()
        self.notifier.settlement_failed = AsyncMock(return_value=True)
        return create_app(self.orders, self.notifier)

    def status(self):
        return self.orders.get_order(self.order.id).status

    async def test_epay_form_post(self):
        resp = await self.client.post(NOTIFY_URL.format("alipay"), data=epay_params(self.panel, self.order))
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "success")
        self.assertEqual(self.status(), Order.STATUS_PAID)

    async def test_epay_query_get(self):
        resp = await self.client.get(NOTIFY_URL.format("wxpay"), params=epay_params(self.panel, self.order))
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "success")

        # redelivery is acknowledged without settling again
        resp = await self.client.get(NOTIFY_URL.format("wxpay"), params=epay_params(self.panel, self.order))
        self.assertEqual(await resp.text(), "success")
        self.assertEqual(self.panel.db.get_user_by_id(self.user.id).transfer_enable, 10 * 1024 ** 3)

    async def test_epay_bad_signature(self):
        params = epay_params(self.panel, self.order)
        params["sign"] = "0" * 32
        resp = await self.client.post(NOTIFY_URL.format("alipay"), data=params)
        self.assertEqual(resp.status, 400)
        self.assertEqual(await resp.text(), "fail")
        self.assertEqual(self.status(), Order.STATUS_PENDING)

    async def test_stripe_webhook(self):
        payload = stripe_event(self.order.order_no, 10000)
        headers = {"Stripe-Signature": stripe_signature(payload), "Content-Type": "application/json"}
        resp = await self.client.post(NOTIFY_URL.format("stripe"), data=payload, headers=headers)
        self.assertEqual(resp.status, 200)
        self.assertEqual(self.status(), Order.STATUS_PAID)

    async def test_stripe_forged_webhook(self):
        payload = stripe_event(self.order.order_no, 10000)
        headers = {"Stripe-Signature": stripe_signature(payload, secret="whsec_forged")}
        resp = await self.client.post(NOTIFY_URL.format("stripe"), data=payload, headers=headers)
        self.assertEqual(resp.status, 400)
        self.assertEqual(self.status(), Order.STATUS_PENDING)

    async def test_stripe_ignored_event(self):
        payload = stripe_event(self.order.order_no, 10000, event_type="customer.created")
        headers = {"Stripe-Signature": stripe_signature(payload)}
        resp = await self.client.post(NOTIFY_URL.format("stripe"), data=payload, headers=headers)
        self.assertEqual(resp.status, 200)
        self.assertEqual(self.status(), Order.STATUS_PENDING)

    async def test_stripe_foreign_session(self):
        payload = stripe_event(None, 10000)
        headers = {"Stripe-Signature": stripe_signature(payload)}
        resp = await self.client.post(NOTIFY_URL.format("stripe"), data=payload, headers=headers)
        self.assertEqual(resp.status, 200)
        self.assertEqual(self.status(), Order.STATUS_PENDING)

    async def test_unknown_method(self):
        resp = await self.client.post(NOTIFY_URL.format("paypal"), data={})
        self.assertEqual(resp.status, 404)

    async def test_settlement_failure_alerts_admin(self):
        with self.panel.db.transaction() as session:
            session.query(Plan).filter(Plan.id == self.plan.id).delete()

        resp = await self.client.post(NOTIFY_URL.format("alipay"), data=epay_params(self.panel, self.order))
        self.assertEqual(resp.status, 400)
        self.notifier.settlement_failed.assert_awaited_once()
        self.assertEqual(self.notifier.settlement_failed.await_args.args[0], self.order.order_no)
        self.assertEqual(self.status(), Order.STATUS_PAID)

        # the gateway retry sees a paid order and stops
        resp = await self.client.post(NOTIFY_URL.format("alipay"), data=epay_params(self.panel, self.order))
        self.assertEqual(await resp.text(), "success")


class TestAdminNotifier(unittest.IsolatedAsyncioTestCase):
    async def test_send(self):
        bot = AsyncMock()
        notifier = AdminNotifier(bot=bot, admin_id=42)

        self.assertTrue(await notifier.settlement_failed("NP1", "Plan 3 not found"))
        bot.send_message.assert_awaited_once()
        kwargs = bot.send_message.await_args.kwargs
        self.assertEqual(kwargs["chat_id"], 42)
        self.assertIn("NP1", kwargs["text"])
        self.assertIn("Plan 3 not found", kwargs["text"])

    async def test_telegram_failure_is_reported(self):
        bot = AsyncMock()
        bot.send_message.side_effect = TelegramError("chat not found")
        self.assertFalse(await AdminNotifier(bot=bot, admin_id=42).send("hello"))

    async def test_disabled_without_admin(self):
        bot = AsyncMock()
        notifier = AdminNotifier(bot=bot, admin_id=0)
        self.assertFalse(notifier.enabled)
        self.assertFalse(await notifier.send("hello"))
        bot.send_message.assert_not_awaited()


if __name__ == '__main__':
    unittest.main()
