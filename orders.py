import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from advanced_config import ORDER_SETTINGS
from config import TIMEZONE
from coupons import to_money
from database import Order, utcnow
from errors import Forbidden, InvalidState, NotFound, UnrecognizedEvent, ValidationFailed
from payments import CONTENT_BALANCE, METHOD_BALANCE, PayRequest, get_gateway

logger = logging.getLogger(__name__)


def generate_order_no(now=None):
    """Time-based order number, e.g. ``NP20261019083015123`` + 6 random digits."""
    now = now or datetime.now(TIMEZONE)
    return "{}{}{:03d}{:06d}".format(
        ORDER_SETTINGS['order_no_prefix'],
        now.strftime('%Y%m%d%H%M%S'),
        now.microsecond // 1000,
        random.randint(0, 999999),
    )


class OrderService:
    def __init__(self, db, coupon_service, settlement, gateways):
        self.db = db
        self.coupon_service = coupon_service
        self.settlement = settlement
        self.gateways = gateways

    def _require_order(self, order_id: int):
        order = self.db.get_order(order_id)
        if order is None:
            raise NotFound('Order does not exist')
        return order

    def _new_order(self, **fields):
        now = utcnow()
        for attempt in range(ORDER_SETTINGS['order_no_attempts']):
            order = Order(
                order_no=generate_order_no(),
                status=Order.STATUS_PENDING,
                pay_method='',
                expired_at=now + timedelta(minutes=ORDER_SETTINGS['expire_minutes']),
                **fields
            )
            try:
                return self.db.create_order(order)
            except IntegrityError:
                logger.warning(f"Order number {order.order_no} already taken (attempt {attempt + 1})")
        raise InvalidState('Could not allocate an order number')

    # User operations
    def create_order(self, user_id: int, plan_id: int, coupon_code=None, remark=''):
        plan = self.db.get_plan(plan_id)
        if plan is None:
            raise NotFound('Plan does not exist')

        amount = to_money(plan.price)
        discount = Decimal('0.00')
        coupon_id = None

        # Only checks limits; usage is counted when the order is paid
        if coupon_code:
            coupon, discount = self.coupon_service.verify(coupon_code, user_id, plan_id, amount)
            coupon_id = coupon.id

        order = self._new_order(
            type=Order.TYPE_PLAN,
            user_id=user_id,
            plan_id=plan_id,
            coupon_id=coupon_id,
            amount=amount,
            discount=discount,
            paid=max(Decimal('0.00'), amount - discount),
            remark=remark,
        )
        logger.info(f"Created order {order.order_no} for user {user_id}, plan {plan_id}, paid {order.paid}")
        return order

    def create_recharge_order(self, user_id: int, amount):
        amount = to_money(amount)
        if amount < 1:
            raise ValidationFailed('invalid_amount', 'Recharge amount must be at least 1')

        order = self._new_order(
            type=Order.TYPE_RECHARGE,
            user_id=user_id,
            amount=amount,
            discount=Decimal('0.00'),
            paid=amount,
        )
        logger.info(f"Created recharge order {order.order_no} for user {user_id}, amount {amount}")
        return order

    def get_order(self, order_id: int):
        return self._require_order(order_id)

    def get_order_by_no(self, order_no: str):
        order = self.db.get_order_by_no(order_no)
        if order is None:
            raise NotFound('Order does not exist')
        return order

    def list_user_orders(self, user_id: int):
        return self.db.get_user_orders(user_id)

    def cancel_order(self, order_id: int, user_id: int):
        order = self._require_order(order_id)
        if order.user_id != user_id:
            raise Forbidden()
        if not self.db.transition_order(order.id, Order.STATUS_PENDING, Order.STATUS_CANCELLED):
            raise InvalidState('Only pending orders can be cancelled')
        logger.info(f"Order {order.order_no} cancelled by user {user_id}")

    # Admin operations
    def admin_list_orders(self, page=1, page_size=None, status=None, user_id=None):
        page = max(page or 1, 1)
        page_size = page_size or ORDER_SETTINGS['default_page_size']
        page_size = min(max(page_size, 1), ORDER_SETTINGS['max_page_size'])
        orders, total = self.db.list_orders(page, page_size, status=status, user_id=user_id)
        return {'list': orders, 'total': total, 'page': page, 'page_size': page_size}

    def admin_mark_paid(self, order_id: int, pay_method='manual'):
        order = self._require_order(order_id)
        if not self._mark_paid(order, pay_method):
            raise InvalidState('Order is not pending')

    def admin_refund(self, order_id: int):
        # Entitlement, balance and commission already granted are kept
        order = self._require_order(order_id)
        if not self.db.transition_order(order.id, Order.STATUS_PAID, Order.STATUS_REFUNDED,
                                        refunded_at=utcnow()):
            raise InvalidState('Order is not paid')
        logger.info(f"Order {order.order_no} refunded")
        self.db.log_system('INFO', 'orders', 'Order refunded', {'order_no': order.order_no})

    def admin_delete_order(self, order_id: int):
        # paid and refunded orders stay as the payment and commission ledger
        order = self._require_order(order_id)
        if not self.db.delete_order(order.id, (Order.STATUS_PENDING, Order.STATUS_CANCELLED)):
            raise InvalidState('Only pending or cancelled orders can be deleted')
        logger.info(f"Order {order.order_no} deleted")

    # Payment
    def pay_order(self, order_no: str, method: str, client_ip: str):
        """Start a payment; returns the gateway's ``PayResponse``."""
        order = self.get_order_by_no(order_no)
        if order.status != Order.STATUS_PENDING:
            raise InvalidState('Order is not pending')
        if method == METHOD_BALANCE and order.type == Order.TYPE_RECHARGE:
            raise ValidationFailed('invalid_method', 'Recharge orders cannot be paid from balance')

        gateway = get_gateway(self.gateways, method)
        response = gateway.pay(PayRequest(
            order_no=order.order_no,
            amount=Decimal(order.paid),
            description=f"Order {order.order_no}",
            client_ip=client_ip,
            method=method,
            user_id=order.user_id,
        ))

        if response.content_type == CONTENT_BALANCE:
            if not self._mark_paid(order, method):
                # Paid through another route meanwhile; give the money back
                gateway.refund(order.user_id, order.paid)
                raise InvalidState('Order is not pending')
        elif response.trade_no:
            self.db.set_order_trade(order.id, response.trade_no, method)

        return response

    def handle_payment_notify(self, method: str, params):
        """
        Verify a gateway notification and settle the order it confirms.

        Verification failures propagate so the gateway retries. Duplicate
        notifications for an already paid order are accepted without effect.
        Returns the settled order, or None when nothing was done.
        """
        gateway = get_gateway(self.gateways, method)
        try:
            notification = gateway.verify(params)
        except UnrecognizedEvent as e:
            logger.info(f"Ignoring {method} notification: {e.message}")
            return None

        order = self.db.get_order_by_no(notification.order_no)
        if order is None:
            raise NotFound('Order does not exist')

        if order.status == Order.STATUS_PAID:
            logger.info(f"Duplicate {method} notification for paid order {order.order_no}")
            return None

        if notification.amount and to_money(notification.amount) != to_money(order.paid):
            logger.warning(
                f"Gateway {method} reported {notification.amount} for order {order.order_no}, expected {order.paid}"
            )

        if not self._mark_paid(order, self._reported_method(gateway, method, notification)):
            current = self.db.get_order(order.id)
            if current is not None and current.status == Order.STATUS_PAID:
                return None
            logger.error(f"Gateway {method} confirmed payment for order {order.order_no} in state {order.status}")
            raise InvalidState('Order is not pending')
        return order

    def _reported_method(self, gateway, method: str, notification):
        """
        The method to stamp on the order. Gateways sharing one callback URL
        report the buyer's actual method; it is trusted only if it maps to the
        same adapter.
        """
        reported = notification.method
        if reported and self.gateways.get(reported) is gateway:
            return reported
        return method

    def _mark_paid(self, order: Order, pay_method: str):
        """Pending -> paid, then settle. False if the order was not pending."""
        paid_at = utcnow()
        if not self.db.transition_order(order.id, Order.STATUS_PENDING, Order.STATUS_PAID,
                                        paid_at=paid_at, pay_method=pay_method):
            return False

        order.status = Order.STATUS_PAID
        order.paid_at = paid_at
        order.pay_method = pay_method
        logger.info(f"Order {order.order_no} paid via {pay_method}")
        self.db.log_system('INFO', 'orders', 'Order paid', order.to_dict())

        self.settlement.apply(order)
        return True
