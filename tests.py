import json
import os
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

from database import GB, Coupon, ErrorLog, InviteRecord, Order, Plan, SystemLog, User, utcnow
from errors import (
    CouponNotFound, Forbidden, GatewayError, InvalidState, NotFound, SettlementFailed,
    SignatureInvalid, UnknownMethod, ValidationFailed
)
from init_db import init_database
from maintenance import CleanupManager
from run import Panel

TEST_PAYMENT_CONFIG = {
    "epay": {
        "enabled": True,
        "url": "https://pay.example.com/",
        "pid": "1001",
        "key": "epay-secret",
        "notify_url": "http://panel.test/api/v1/payment/notify/alipay",
        "return_url": "http://panel.test/user/orders",
    },
    "stripe": {
        "enabled": True,
        "api_key": "sk_test_123",
        "webhook_key": "whsec_test_secret",
        "currency": "cny",
        "success_url": "http://panel.test/user/orders?status=success",
        "cancel_url": "http://panel.test/user/orders?status=cancel",
    },
    "balance": {"enabled": True},
}

TEST_INVITE_SETTINGS = {"enabled": True, "commission_rate": 0.1}


def make_panel(invite_settings=None, db_url='sqlite://'):
    return Panel(
        db_url=db_url,
        payment_config=TEST_PAYMENT_CONFIG,
        invite_settings=invite_settings or dict(TEST_INVITE_SETTINGS),
    )


def epay_params(panel, order, **overrides):
    """A successful EPay callback for ``order``, signed with the test key."""
    params = {
        "pid": "1001",
        "trade_no": "2026101900001",
        "out_trade_no": order.order_no,
        "type": "alipay",
        "name": f"Order {order.order_no}",
        "money": f"{order.paid:.2f}",
        "trade_status": "TRADE_SUCCESS",
    }
    params.update(overrides)
    gateway = panel.order_service.gateways["alipay"]
    params["sign"] = gateway.sign({k: v for k, v in params.items() if v != ''})
    params["sign_type"] = "MD5"
    return params


class PanelTestCase(unittest.TestCase):
    def setUp(self):
        """Set up an in-memory panel with one plan and one buyer"""
        self.panel = make_panel()
        self.db = self.panel.db
        self.orders = self.panel.order_service
        self.plan = self.db.create_plan(name="Standard", price=100, duration=30, transfer=10, group_id=2)
        self.user = self.db.create_user(email="buyer@example.com", username="buyer")

    def create_coupon(self, **fields):
        fields.setdefault("type_", Coupon.TYPE_FIXED)
        fields.setdefault("value", 50)
        fields.setdefault("min_amount", Decimal("0"))
        return self.panel.coupon_service.create(**fields)

    def reload_user(self, user_id=None):
        return self.db.get_user_by_id(user_id or self.user.id)


class TestOrderCreation(PanelTestCase):
    def test_create_without_coupon(self):
        """Test order amounts without a coupon"""
        order = self.orders.create_order(self.user.id, self.plan.id, remark="first")

        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertEqual(order.type, Order.TYPE_PLAN)
        self.assertEqual(order.amount, Decimal("100.00"))
        self.assertEqual(order.discount, Decimal("0"))
        self.assertEqual(order.paid, Decimal("100.00"))
        self.assertTrue(order.order_no.startswith("NP"))
        self.assertAlmostEqual(
            (order.expired_at - order.created_at).total_seconds(), 30 * 60, delta=5
        )

    def test_create_with_fixed_coupon(self):
        """Test fixed coupon discount is applied but usage is not counted yet"""
        coupon = self.create_coupon(code="HALF")
        order = self.orders.create_order(self.user.id, self.plan.id, coupon_code="half")

        self.assertEqual(order.amount, Decimal("100.00"))
        self.assertEqual(order.discount, Decimal("50.00"))
        self.assertEqual(order.paid, Decimal("50.00"))
        self.assertEqual(order.paid, order.amount - order.discount)
        self.assertEqual(order.coupon_id, coupon.id)
        self.assertEqual(self.db.get_coupon(coupon.id).used_count, 0)

    def test_fixed_coupon_larger_than_price_is_clamped(self):
        self.create_coupon(code="HUGE", value=500)
        order = self.orders.create_order(self.user.id, self.plan.id, coupon_code="HUGE")

        self.assertEqual(order.discount, Decimal("100.00"))
        self.assertEqual(order.paid, Decimal("0.00"))

    def test_missing_plan(self):
        with self.assertRaises(NotFound):
            self.orders.create_order(self.user.id, 999)

    def test_coupon_failure_is_creation_failure(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self.orders.create_order(self.user.id, self.plan.id, coupon_code="NOPE")
        self.assertEqual(ctx.exception.reason, "not_found")
        self.assertEqual(self.orders.list_user_orders(self.user.id), [])

    def test_order_numbers_are_unique(self):
        numbers = {self.orders.create_order(self.user.id, self.plan.id).order_no for _ in range(20)}
        self.assertEqual(len(numbers), 20)

    def test_recharge_order(self):
        order = self.orders.create_recharge_order(self.user.id, 20)
        self.assertEqual(order.type, Order.TYPE_RECHARGE)
        self.assertIsNone(order.plan_id)
        self.assertEqual(order.paid, Decimal("20.00"))

        with self.assertRaises(ValidationFailed):
            self.orders.create_recharge_order(self.user.id, 0)


class TestCouponVerification(PanelTestCase):
    def verify(self, code, amount=100, plan_id=None):
        return self.panel.coupon_service.verify(code, self.user.id, plan_id or self.plan.id, amount)

    def assertReason(self, reason, code, **kwargs):
        with self.assertRaises(ValidationFailed) as ctx:
            self.verify(code, **kwargs)
        self.assertEqual(ctx.exception.reason, reason)

    def test_not_found(self):
        with self.assertRaises(CouponNotFound) as ctx:
            self.verify("MISSING")
        self.assertIsInstance(ctx.exception, NotFound)

    def test_disabled(self):
        self.create_coupon(code="OFF", is_active=False)
        self.assertReason("disabled", "OFF")

    def test_validity_window(self):
        now = utcnow()
        self.create_coupon(code="SOON", start_at=now + timedelta(days=1))
        self.create_coupon(code="OLD", expired_at=now - timedelta(days=1))
        self.create_coupon(code="OPEN", start_at=now - timedelta(days=1), expired_at=now + timedelta(days=1))

        self.assertReason("not_yet_active", "SOON")
        self.assertReason("expired", "OLD")
        self.assertEqual(self.verify("OPEN")[1], Decimal("50.00"))

    def test_exhausted(self):
        coupon = self.create_coupon(code="GONE", total_limit=1)
        self.db.increment_coupon_usage(coupon.id)
        self.assertReason("exhausted", "GONE")

    def test_per_user_limit_counts_paid_orders_only(self):
        self.create_coupon(code="ONCE", limit_per_user=1)

        first = self.orders.create_order(self.user.id, self.plan.id, coupon_code="ONCE")
        # a pending order does not count against the limit
        self.orders.create_order(self.user.id, self.plan.id, coupon_code="ONCE")

        self.orders.admin_mark_paid(first.id)
        self.assertReason("per_user_limit_reached", "ONCE")

    def test_plan_scope(self):
        self.create_coupon(code="SCOPED", plan_ids=f"99, abc,,{self.plan.id}")
        self.create_coupon(code="OTHER", plan_ids="99,x")

        self.assertEqual(self.verify("SCOPED")[1], Decimal("50.00"))
        self.assertReason("plan_not_eligible", "OTHER")

    def test_minimum_amount(self):
        self.create_coupon(code="MIN", min_amount=Decimal("150"))
        self.assertReason("below_minimum", "MIN")

    def test_percentage_is_capped(self):
        self.create_coupon(code="PCT", type_=Coupon.TYPE_PERCENTAGE, value=50, max_discount=Decimal("10"))
        self.assertEqual(self.verify("PCT")[1], Decimal("10.00"))

    def test_percentage_without_cap(self):
        self.create_coupon(code="PCT25", type_=Coupon.TYPE_PERCENTAGE, value=25)
        self.assertEqual(self.verify("PCT25", amount=Decimal("33.33"))[1], Decimal("8.33"))

    def test_free_days_has_no_money_discount(self):
        self.create_coupon(code="DAYS", type_=Coupon.TYPE_FREE_DAYS, value=7)
        self.assertEqual(self.verify("DAYS")[1], Decimal("0.00"))

    def test_negative_discount_is_clamped(self):
        """Rows written around the service never raise the price"""
        fixed = Coupon(type=Coupon.TYPE_FIXED, value=Decimal("-10"))
        percentage = Coupon(type=Coupon.TYPE_PERCENTAGE, value=Decimal("-20"), max_discount=Decimal("0"))
        for coupon in (fixed, percentage):
            self.assertEqual(self.panel.coupon_service.compute_discount(coupon, Decimal("100")), Decimal("0.00"))

    def test_checks_run_in_order(self):
        """A disabled and expired coupon reports disabled first"""
        self.create_coupon(code="BOTH", is_active=False, expired_at=utcnow() - timedelta(days=1))
        self.assertReason("disabled", "BOTH")


class TestCouponAdministration(PanelTestCase):
    def test_generated_code(self):
        coupon = self.panel.coupon_service.create(Coupon.TYPE_FIXED, 5)
        self.assertEqual(len(coupon.code), 12)
        self.assertTrue(coupon.code.isalnum())
        self.assertEqual(coupon.code, coupon.code.upper())

    def test_duplicate_code(self):
        self.create_coupon(code="DUP")
        with self.assertRaises(ValidationFailed) as ctx:
            self.create_coupon(code="dup")
        self.assertEqual(ctx.exception.reason, "duplicate_code")

    def test_update_and_delete(self):
        coupon = self.create_coupon(code="EDIT")
        updated = self.panel.coupon_service.update(coupon.id, code="EDITED", value=Decimal("20"), total_limit=3)
        self.assertEqual(updated.code, "EDITED")
        self.assertEqual(updated.total_limit, 3)

        coupons, total = self.panel.coupon_service.list(search="edit")
        self.assertEqual(total, 1)
        self.assertEqual(coupons[0].id, coupon.id)

        self.panel.coupon_service.delete(coupon.id)
        with self.assertRaises(NotFound):
            self.panel.coupon_service.delete(coupon.id)

    def test_negative_amounts_rejected(self):
        service = self.panel.coupon_service
        for fields in ({"value": -10}, {"max_discount": Decimal("-1")}, {"min_amount": Decimal("-5")}):
            with self.assertRaises(ValidationFailed) as ctx:
                self.create_coupon(code="NEG", **fields)
            self.assertEqual(ctx.exception.reason, "invalid_value")

        coupon = self.create_coupon(code="POS")
        with self.assertRaises(ValidationFailed) as ctx:
            service.update(coupon.id, value=Decimal("-5"))
        self.assertEqual(ctx.exception.reason, "invalid_value")
        self.assertEqual(self.db.get_coupon(coupon.id).value, Decimal("50.00"))

    def test_invalid_type(self):
        with self.assertRaises(ValidationFailed):
            self.panel.coupon_service.create("bogus", 5)


class TestOrderStateMachine(PanelTestCase):
    def test_cancel_pending(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.cancel_order(order.id, self.user.id)
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_CANCELLED)

    def test_cancel_requires_owner(self):
        other = self.db.create_user(email="other@example.com")
        order = self.orders.create_order(self.user.id, self.plan.id)
        with self.assertRaises(Forbidden):
            self.orders.cancel_order(order.id, other.id)

    def test_cancel_only_from_pending(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)
        with self.assertRaises(InvalidState):
            self.orders.cancel_order(order.id, self.user.id)

        self.orders.admin_refund(order.id)
        with self.assertRaises(InvalidState):
            self.orders.cancel_order(order.id, self.user.id)

    def test_refund_only_from_paid(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        with self.assertRaises(InvalidState):
            self.orders.admin_refund(order.id)

        self.orders.cancel_order(order.id, self.user.id)
        with self.assertRaises(InvalidState):
            self.orders.admin_refund(order.id)

    def test_refund_keeps_entitlement(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)
        self.orders.admin_refund(order.id)

        refunded = self.orders.get_order(order.id)
        self.assertEqual(refunded.status, Order.STATUS_REFUNDED)
        self.assertIsNotNone(refunded.refunded_at)
        self.assertEqual(self.reload_user().transfer_enable, 10 * GB)

    def test_mark_paid_twice_settles_once(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id, "manual")
        with self.assertRaises(InvalidState):
            self.orders.admin_mark_paid(order.id, "manual")

        paid = self.orders.get_order(order.id)
        self.assertEqual(paid.status, Order.STATUS_PAID)
        self.assertEqual(paid.pay_method, "manual")
        self.assertIsNotNone(paid.paid_at)
        self.assertEqual(self.reload_user().transfer_enable, 10 * GB)

    def test_cannot_mark_cancelled_order_paid(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.cancel_order(order.id, self.user.id)
        with self.assertRaises(InvalidState):
            self.orders.admin_mark_paid(order.id)
        self.assertEqual(self.reload_user().transfer_enable, 0)

    def test_transition_is_conditional(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.assertTrue(self.db.transition_order(order.id, Order.STATUS_PENDING, Order.STATUS_CANCELLED))
        self.assertFalse(self.db.transition_order(order.id, Order.STATUS_PENDING, Order.STATUS_PAID))

    def test_missing_orders(self):
        with self.assertRaises(NotFound):
            self.orders.cancel_order(404, self.user.id)
        with self.assertRaises(NotFound):
            self.orders.admin_mark_paid(404)
        with self.assertRaises(NotFound):
            self.orders.admin_refund(404)
        with self.assertRaises(NotFound):
            self.orders.admin_delete_order(404)
        with self.assertRaises(NotFound):
            self.orders.get_order_by_no("NP0")

    def test_paid_orders_cannot_be_deleted(self):
        paid = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(paid.id)
        with self.assertRaises(InvalidState):
            self.orders.admin_delete_order(paid.id)

        self.orders.admin_refund(paid.id)
        with self.assertRaises(InvalidState):
            self.orders.admin_delete_order(paid.id)

        cancelled = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.cancel_order(cancelled.id, self.user.id)
        self.orders.admin_delete_order(cancelled.id)
        self.assertEqual([o.id for o in self.orders.list_user_orders(self.user.id)], [paid.id])

    def test_delete(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_delete_order(order.id)
        with self.assertRaises(NotFound):
            self.orders.get_order(order.id)

    def test_admin_list_filters_and_pages(self):
        other = self.db.create_user(email="other@example.com")
        for _ in range(3):
            self.orders.create_order(self.user.id, self.plan.id)
        paid = self.orders.create_order(other.id, self.plan.id)
        self.orders.admin_mark_paid(paid.id)

        result = self.orders.admin_list_orders(page=1, page_size=2)
        self.assertEqual(result["total"], 4)
        self.assertEqual(len(result["list"]), 2)
        self.assertEqual(result["list"][0].id, paid.id)

        self.assertEqual(self.orders.admin_list_orders(status=Order.STATUS_PAID)["total"], 1)
        self.assertEqual(self.orders.admin_list_orders(user_id=self.user.id)["total"], 3)
        self.assertEqual(self.orders.admin_list_orders(page_size=1000)["page_size"], 100)

        mine = self.orders.list_user_orders(self.user.id)
        self.assertEqual(len(mine), 3)
        self.assertGreater(mine[0].id, mine[-1].id)


class TestSettlement(PanelTestCase):
    def test_grants_quota_and_group(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)

        user = self.reload_user()
        self.assertEqual(user.transfer_enable, 10 * GB)
        self.assertEqual(user.group_id, 2)

    def test_zero_group_keeps_tier(self):
        plan = self.db.create_plan(name="Addon", price=5, duration=0, transfer=1, group_id=0)
        self.db.increment_user(self.user.id, group_id=2)
        order = self.orders.create_order(self.user.id, plan.id)
        self.orders.admin_mark_paid(order.id)
        self.assertEqual(self.reload_user().group_id, 3)

    def test_extends_active_subscription_from_current_expiry(self):
        current = utcnow() + timedelta(days=10)
        with self.db.transaction() as session:
            session.query(User).filter(User.id == self.user.id).update({User.expired_at: current})

        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)

        self.assertEqual(self.reload_user().expired_at, current + timedelta(days=30))

    def test_expired_subscription_restarts_from_now(self):
        with self.db.transaction() as session:
            session.query(User).filter(User.id == self.user.id).update(
                {User.expired_at: utcnow() - timedelta(days=5)}
            )

        before = utcnow()
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)
        after = utcnow()

        expiry = self.reload_user().expired_at
        self.assertGreaterEqual(expiry, before + timedelta(days=30))
        self.assertLessEqual(expiry, after + timedelta(days=30))

    def test_free_days_coupon_adds_days(self):
        self.create_coupon(code="WEEK", type_=Coupon.TYPE_FREE_DAYS, value=7)
        before = utcnow()
        order = self.orders.create_order(self.user.id, self.plan.id, coupon_code="WEEK")
        self.orders.admin_mark_paid(order.id)

        self.assertGreaterEqual(self.reload_user().expired_at, before + timedelta(days=37))

    def test_coupon_usage_counted_at_settlement(self):
        coupon = self.create_coupon(code="COUNT")
        order = self.orders.create_order(self.user.id, self.plan.id, coupon_code="COUNT")
        self.assertEqual(self.db.get_coupon(coupon.id).used_count, 0)

        self.orders.admin_mark_paid(order.id)
        self.assertEqual(self.db.get_coupon(coupon.id).used_count, 1)

    def test_total_limit_caps_used_count(self):
        """Orders created before any payment all pass; usage stops at the limit"""
        coupon = self.create_coupon(code="TWO", total_limit=2, limit_per_user=0)
        buyers = [self.db.create_user(email=f"b{i}@example.com") for i in range(4)]
        pending = [self.orders.create_order(b.id, self.plan.id, coupon_code="TWO") for b in buyers]

        for order in pending:
            self.orders.admin_mark_paid(order.id)

        self.assertEqual(self.db.get_coupon(coupon.id).used_count, 2)

    def test_recharge_credits_balance(self):
        order = self.orders.create_recharge_order(self.user.id, 20)
        self.orders.admin_mark_paid(order.id)

        user = self.reload_user()
        self.assertEqual(user.balance, Decimal("20.00"))
        self.assertEqual(user.transfer_enable, 0)

    def test_missing_plan_leaves_order_paid(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        with self.db.transaction() as session:
            session.query(Plan).filter(Plan.id == self.plan.id).delete()

        with self.assertRaises(SettlementFailed) as ctx:
            self.orders.admin_mark_paid(order.id)

        self.assertEqual(ctx.exception.order_no, order.order_no)
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PAID)
        with self.db.transaction() as session:
            self.assertEqual(session.query(ErrorLog).filter_by(error_type='SettlementFailed').count(), 1)


class TestReferralCommission(PanelTestCase):
    def setUp(self):
        super().setUp()
        self.inviter = self.db.create_user(email="inviter@example.com")
        self.invites = self.panel.invite_service

    def test_end_to_end_with_coupon(self):
        self.invites.register_relationship(self.user.id, self.inviter.invite_code)
        record = self.db.get_invite_record_by_invitee(self.user.id)
        self.assertEqual(record.status, InviteRecord.STATUS_PENDING)
        self.assertIsNone(record.order_id)

        self.create_coupon(code="FIFTY")
        order = self.orders.create_order(self.user.id, self.plan.id, coupon_code="FIFTY")
        self.assertEqual((order.amount, order.discount, order.paid),
                         (Decimal("100.00"), Decimal("50.00"), Decimal("50.00")))

        self.orders.admin_mark_paid(order.id)

        self.assertEqual(self.reload_user().transfer_enable, 10 * GB)
        record = self.db.get_invite_record_by_invitee(self.user.id)
        self.assertEqual(record.status, InviteRecord.STATUS_SETTLED)
        self.assertEqual(record.order_id, order.id)
        self.assertEqual(record.commission, Decimal("5.00"))
        self.assertEqual(self.reload_user(self.inviter.id).commission, Decimal("5.00"))

    def test_commission_is_one_time(self):
        self.invites.register_relationship(self.user.id, self.inviter.invite_code)
        for _ in range(2):
            order = self.orders.create_order(self.user.id, self.plan.id)
            self.orders.admin_mark_paid(order.id)

        self.assertEqual(self.reload_user(self.inviter.id).commission, Decimal("10.00"))

    def test_record_created_when_missing(self):
        self.db.set_invited_by(self.user.id, self.inviter.id)
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)

        record = self.db.get_invite_record_by_invitee(self.user.id)
        self.assertEqual(record.inviter_id, self.inviter.id)
        self.assertEqual(record.status, InviteRecord.STATUS_SETTLED)
        self.assertEqual(record.commission, Decimal("10.00"))

    def test_no_referrer(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)
        self.assertIsNone(self.db.get_invite_record_by_invitee(self.user.id))

    def test_program_disabled(self):
        panel = make_panel(invite_settings={"enabled": False, "commission_rate": 0.1})
        inviter = panel.db.create_user(email="a@example.com")
        invitee = panel.db.create_user(email="b@example.com")
        panel.invite_service.register_relationship(invitee.id, inviter.invite_code)

        self.assertIsNone(panel.invite_service.process_commission(invitee.id, Decimal("50"), 1))
        self.assertEqual(panel.db.get_user_by_id(inviter.id).commission, Decimal("0"))

    def test_recharge_earns_no_commission(self):
        self.invites.register_relationship(self.user.id, self.inviter.invite_code)
        order = self.orders.create_recharge_order(self.user.id, 50)
        self.orders.admin_mark_paid(order.id)

        self.assertEqual(self.reload_user(self.inviter.id).commission, Decimal("0"))
        self.assertIsNone(self.db.get_invite_record_by_invitee(self.user.id).order_id)

    def test_register_rejects_self_and_unknown_codes(self):
        with self.assertRaises(ValidationFailed):
            self.invites.register_relationship(self.inviter.id, self.inviter.invite_code)
        with self.assertRaises(NotFound):
            self.invites.register_relationship(self.user.id, "nosuchcode")
        self.assertIsNone(self.invites.register_relationship(self.user.id, ""))

    def test_invite_info_and_records(self):
        invitee = self.db.create_user(email="bob.smith@example.com")
        self.invites.register_relationship(invitee.id, self.inviter.invite_code)
        self.invites.register_relationship(self.user.id, self.inviter.invite_code)
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.admin_mark_paid(order.id)

        info = self.invites.get_invite_info(self.inviter.id, "https://panel.example.com")
        self.assertEqual(info["invite_count"], 2)
        self.assertEqual(info["total_commission"], Decimal("10.00"))
        self.assertEqual(info["pending_commission"], Decimal("0.00"))
        self.assertEqual(info["invite_link"], f"https://panel.example.com/register?code={self.inviter.invite_code}")

        records, total = self.invites.get_invite_records(self.inviter.id)
        self.assertEqual(total, 2)
        self.assertIn("bo***@example.com", [r["email"] for r in records])


class TestPaymentFlow(PanelTestCase):
    def test_epay_pay_keeps_order_pending(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        response = self.orders.pay_order(order.order_no, "alipay", "10.0.0.1")

        self.assertEqual(response.content_type, "url")
        self.assertTrue(response.pay_url.startswith("https://pay.example.com/submit.php?"))
        self.assertIn("money=100.00", response.pay_url)
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PENDING)

    def test_pay_uses_net_amount(self):
        self.create_coupon(code="NET")
        order = self.orders.create_order(self.user.id, self.plan.id, coupon_code="NET")
        response = self.orders.pay_order(order.order_no, "wxpay", "10.0.0.1")
        self.assertIn("money=50.00", response.pay_url)
        self.assertIn("type=wxpay", response.pay_url)

    def test_pay_rejects_non_pending_and_unknown_method(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        with self.assertRaises(UnknownMethod):
            self.orders.pay_order(order.order_no, "paypal", "10.0.0.1")

        self.orders.cancel_order(order.id, self.user.id)
        with self.assertRaises(InvalidState):
            self.orders.pay_order(order.order_no, "alipay", "10.0.0.1")

    def test_notify_twice_settles_once(self):
        self.invites = self.panel.invite_service
        inviter = self.db.create_user(email="inviter@example.com")
        self.invites.register_relationship(self.user.id, inviter.invite_code)
        order = self.orders.create_order(self.user.id, self.plan.id)
        params = epay_params(self.panel, order)

        settled = self.orders.handle_payment_notify("alipay", params)
        self.assertEqual(settled.id, order.id)
        self.assertIsNone(self.orders.handle_payment_notify("alipay", params))

        paid = self.orders.get_order(order.id)
        self.assertEqual(paid.status, Order.STATUS_PAID)
        self.assertEqual(paid.pay_method, "alipay")
        self.assertEqual(self.reload_user().transfer_enable, 10 * GB)
        self.assertEqual(self.reload_user(inviter.id).commission, Decimal("10.00"))

    def test_notify_bad_signature_leaves_order_pending(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        params = epay_params(self.panel, order)
        params["money"] = "0.01"

        with self.assertRaises(SignatureInvalid):
            self.orders.handle_payment_notify("alipay", params)
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PENDING)

    def test_notify_unsuccessful_trade(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        with self.assertRaises(SignatureInvalid):
            self.orders.handle_payment_notify("alipay", epay_params(self.panel, order, trade_status="WAIT_BUYER_PAY"))
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PENDING)

    def test_notify_for_cancelled_order(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.cancel_order(order.id, self.user.id)
        with self.assertRaises(InvalidState):
            self.orders.handle_payment_notify("alipay", epay_params(self.panel, order))
        self.assertEqual(self.reload_user().transfer_enable, 0)

    def test_notify_unknown_order(self):
        order = Order(order_no="NP000", paid=Decimal("1.00"))
        with self.assertRaises(NotFound):
            self.orders.handle_payment_notify("alipay", epay_params(self.panel, order))

    def test_balance_payment_settles_immediately(self):
        self.db.increment_user(self.user.id, balance=Decimal("120"))
        order = self.orders.create_order(self.user.id, self.plan.id)

        response = self.orders.pay_order(order.order_no, "balance", "10.0.0.1")

        self.assertEqual(response.content_type, "balance")
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PAID)
        user = self.reload_user()
        self.assertEqual(user.balance, Decimal("20.00"))
        self.assertEqual(user.transfer_enable, 10 * GB)

    def test_balance_payment_insufficient(self):
        self.db.increment_user(self.user.id, balance=Decimal("10"))
        order = self.orders.create_order(self.user.id, self.plan.id)

        with self.assertRaises(GatewayError):
            self.orders.pay_order(order.order_no, "balance", "10.0.0.1")
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PENDING)
        self.assertEqual(self.reload_user().balance, Decimal("10.00"))

    def test_recharge_cannot_use_balance(self):
        order = self.orders.create_recharge_order(self.user.id, 10)
        with self.assertRaises(ValidationFailed):
            self.orders.pay_order(order.order_no, "balance", "10.0.0.1")

    def test_wxpay_callback_stamps_reported_method(self):
        """Both EPay methods share the alipay callback URL"""
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.pay_order(order.order_no, "wxpay", "10.0.0.1")

        self.orders.handle_payment_notify("alipay", epay_params(self.panel, order, type="wxpay"))
        self.assertEqual(self.orders.get_order(order.id).pay_method, "wxpay")

    def test_reported_method_of_other_gateway_ignored(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        self.orders.handle_payment_notify("alipay", epay_params(self.panel, order, type="balance"))
        self.assertEqual(self.orders.get_order(order.id).pay_method, "alipay")

    def test_paid_recharge_by_gateway(self):
        order = self.orders.create_recharge_order(self.user.id, 30)
        self.orders.handle_payment_notify("wxpay", epay_params(self.panel, order, type="wxpay"))
        self.assertEqual(self.reload_user().balance, Decimal("30.00"))


class TestRechargeCodes(PanelTestCase):
    def test_redeem_once(self):
        service = self.panel.recharge_service
        codes = service.create_codes(10, 2, remark="promo", creator_id=self.user.id)
        self.assertEqual(len(codes), 2)

        self.assertEqual(service.redeem(self.user.id, codes[0]), Decimal("10.00"))
        self.assertEqual(self.reload_user().balance, Decimal("10.00"))
        with self.assertRaises(ValidationFailed):
            service.redeem(self.user.id, codes[0])

        unused, total = service.list_codes(used=False)
        self.assertEqual(total, 1)
        self.assertEqual(unused[0].code, codes[1])

    def test_delete_only_unused(self):
        service = self.panel.recharge_service
        codes = service.create_codes(5, 2)
        service.redeem(self.user.id, codes[0])
        used, _ = service.list_codes(used=True)

        with self.assertRaises(NotFound):
            service.delete_code(used[0].id)
        unused, _ = service.list_codes(used=False)
        service.delete_code(unused[0].id)
        self.assertEqual(service.list_codes()[1], 1)

    def test_batch_limits(self):
        with self.assertRaises(ValidationFailed):
            self.panel.recharge_service.create_codes(5, 0)
        with self.assertRaises(ValidationFailed):
            self.panel.recharge_service.create_codes(5, 101)


class TestMaintenance(PanelTestCase):
    def test_sweep_cancels_only_expired_pending(self):
        expired = self.orders.create_order(self.user.id, self.plan.id)
        fresh = self.orders.create_order(self.user.id, self.plan.id)
        with self.db.transaction() as session:
            session.query(Order).filter(Order.id == expired.id).update(
                {Order.expired_at: utcnow() - timedelta(minutes=1)}
            )

        manager = CleanupManager(self.db, order_settings={"auto_cancel_expired": True})
        self.assertEqual(manager.cancel_expired_orders(), 1)
        self.assertEqual(self.orders.get_order(expired.id).status, Order.STATUS_CANCELLED)
        self.assertEqual(self.orders.get_order(fresh.id).status, Order.STATUS_PENDING)

    def test_sweep_is_off_by_default(self):
        order = self.orders.create_order(self.user.id, self.plan.id)
        with self.db.transaction() as session:
            session.query(Order).filter(Order.id == order.id).update(
                {Order.expired_at: utcnow() - timedelta(minutes=1)}
            )

        with tempfile.TemporaryDirectory() as log_dir:
            CleanupManager(self.db, log_dir=log_dir).run_once()
        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PENDING)

    def test_old_log_files_removed(self):
        with tempfile.TemporaryDirectory() as log_dir:
            old = os.path.join(log_dir, "panel.log.1")
            recent = os.path.join(log_dir, "panel.log")
            for path in (old, recent):
                with open(path, "w") as f:
                    f.write("line\n")
            stale = (datetime.now() - timedelta(days=120)).timestamp()
            os.utime(old, (stale, stale))

            self.assertEqual(CleanupManager(self.db, log_dir=log_dir).cleanup_old_log_files(), 1)
            self.assertEqual(os.listdir(log_dir), ["panel.log"])

    def test_audit_entries_persisted(self):
        self.db.log_system('INFO', 'orders', 'Order refunded', {'order_no': 'NP1'})
        with self.db.transaction() as session:
            entry = session.query(SystemLog).one()
        self.assertEqual(json.loads(entry.details), {'order_no': 'NP1'})

    def test_audit_failure_is_logged_not_raised(self):
        with patch.object(self.db, 'transaction', side_effect=SQLAlchemyError("disk full")):
            with self.assertLogs('database', level='ERROR'):
                self.db.log_error('SettlementFailed', 'boom', '')

    def test_old_logs_removed(self):
        self.db.log_system('INFO', 'tests', 'recent')
        self.db.log_error('TestError', 'old', '')
        with self.db.transaction() as session:
            session.query(ErrorLog).update({ErrorLog.created_at: utcnow() - timedelta(days=200)})

        system, errors = CleanupManager(self.db).cleanup_old_logs()
        self.assertEqual((system, errors), (0, 1))


class TestConcurrentSettlement(unittest.TestCase):
    """Settlement races on a file database shared by several threads"""

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.panel = make_panel(db_url=f"sqlite:///{os.path.join(tmp.name, 'panel.db')}")
        self.addCleanup(self.panel.db.engine.dispose)
        self.db = self.panel.db
        self.orders = self.panel.order_service
        self.plan = self.db.create_plan(name="Standard", price=100, duration=30, transfer=10)

    def run_together(self, *calls):
        """Start every call at once; InvalidState counts as a lost race."""
        barrier = threading.Barrier(len(calls))

        def run(call):
            barrier.wait()
            try:
                return call()
            except InvalidState as e:
                return e

        with ThreadPoolExecutor(max_workers=len(calls)) as pool:
            return list(pool.map(run, calls))

    def test_racing_confirmations_settle_once(self):
        inviter = self.db.create_user(email="inviter@example.com")
        buyer = self.db.create_user(email="buyer@example.com")
        self.panel.invite_service.register_relationship(buyer.id, inviter.invite_code)
        order = self.orders.create_order(buyer.id, self.plan.id)
        params = epay_params(self.panel, order)

        notified_a, notified_b, marked = self.run_together(
            lambda: self.orders.handle_payment_notify("alipay", params),
            lambda: self.orders.handle_payment_notify("alipay", params),
            lambda: self.orders.admin_mark_paid(order.id),
        )

        winners = [r for r in (notified_a, notified_b) if isinstance(r, Order)]
        if marked is None:
            winners.append(marked)
        self.assertEqual(len(winners), 1)

        self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PAID)
        self.assertEqual(self.db.get_user_by_id(buyer.id).transfer_enable, 10 * GB)
        self.assertEqual(self.db.get_user_by_id(inviter.id).commission, Decimal("10.00"))

    def test_coupon_limit_holds_under_concurrent_settlement(self):
        coupon = self.panel.coupon_service.create(Coupon.TYPE_FIXED, 10, code="TWO", total_limit=2, limit_per_user=0)
        buyers = [self.db.create_user(email=f"b{i}@example.com") for i in range(5)]
        pending = [self.orders.create_order(b.id, self.plan.id, coupon_code="TWO") for b in buyers]

        results = self.run_together(*[lambda o=o: self.orders.admin_mark_paid(o.id) for o in pending])

        self.assertEqual(results, [None] * 5)
        self.assertEqual(self.db.get_coupon(coupon.id).used_count, 2)
        for order in pending:
            self.assertEqual(self.orders.get_order(order.id).status, Order.STATUS_PAID)


class TestInitDatabase(unittest.TestCase):
    def test_seeds_admin_and_plans(self):
        db = init_database('sqlite://', admin_email="admin@example.com")

        admin = db.get_user_by_email("admin@example.com")
        self.assertTrue(admin.is_admin)
        plans = db.get_active_plans()
        self.assertEqual([p.name for p in plans], ["Basic", "Premium"])
        self.assertEqual(plans[0].price, Decimal("10.00"))


if __name__ == '__main__':
    unittest.main()
