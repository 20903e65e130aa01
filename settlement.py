import logging
import traceback

from sqlalchemy.exc import SQLAlchemyError

from database import GB, Coupon, Order
from errors import SettlementFailed

logger = logging.getLogger(__name__)


class SettlementProcessor:
    """
    Applies the effects of an order that just became paid.

    Not idempotent: the caller must invoke ``apply`` once per pending -> paid
    transition, which the conditional status update in ``OrderService``
    guarantees.
    """

    def __init__(self, db, coupon_service, invite_service):
        self.db = db
        self.coupon_service = coupon_service
        self.invite_service = invite_service

    def apply(self, order: Order):
        try:
            if order.type == Order.TYPE_RECHARGE:
                self._apply_recharge(order)
            else:
                self._apply_plan(order)
        except SettlementFailed as e:
            self._record_failure(order, e)
            raise
        except SQLAlchemyError as e:
            failure = SettlementFailed(order.order_no, f"Storage error during settlement: {e}")
            self._record_failure(order, failure)
            raise failure from e

        # Only plan purchases earn referral commission
        if order.type == Order.TYPE_RECHARGE:
            return

        try:
            self.invite_service.process_commission(order.user_id, order.paid, order.id)
        except SQLAlchemyError as e:
            logger.error(f"Commission for order {order.order_no} failed: {e}")
            self.db.log_error('CommissionFailed', str(e), traceback.format_exc(), order.user_id)

    def _apply_plan(self, order: Order):
        plan = self.db.get_plan(order.plan_id) if order.plan_id else None
        if plan is None:
            raise SettlementFailed(order.order_no, f"Plan {order.plan_id} not found")

        extend_days = plan.duration
        if order.coupon_id:
            coupon = self.db.get_coupon(order.coupon_id)
            if coupon is not None and coupon.type == Coupon.TYPE_FREE_DAYS:
                extend_days += int(coupon.value)

        user = self.db.grant_entitlement(
            order.user_id,
            extend_days=extend_days,
            transfer_bytes=plan.transfer * GB,
            group_id=plan.group_id or 0,
        )
        if user is None:
            raise SettlementFailed(order.order_no, f"User {order.user_id} not found")

        if order.coupon_id:
            try:
                self.coupon_service.increment_usage(order.coupon_id)
            except SQLAlchemyError as e:
                logger.error(f"Coupon usage increment for order {order.order_no} failed: {e}")

        logger.info(
            f"Settled order {order.order_no}: user {user.id} expires {user.expired_at}, "
            f"quota {user.transfer_enable} bytes, group {user.group_id}"
        )

    def _apply_recharge(self, order: Order):
        if not self.db.increment_user(order.user_id, balance=order.paid):
            raise SettlementFailed(order.order_no, f"User {order.user_id} not found")
        logger.info(f"Settled recharge {order.order_no}: credited {order.paid} to user {order.user_id}")

    def _record_failure(self, order, error):
        logger.error(f"Settlement failed for paid order {order.order_no}: {error.message}")
        self.db.log_error('SettlementFailed', error.message, traceback.format_exc(), order.user_id)
