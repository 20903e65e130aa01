from sqlalchemy import (
    Column, Integer, BigInteger, Numeric, String, Boolean, ForeignKey, TIMESTAMP, Text,
    create_engine, func, or_
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal
import json
import logging
import uuid

import pytz

logger = logging.getLogger(__name__)

# Declare base for using SQLAlchemy
Base = declarative_base()

Money = Numeric(10, 2)

GB = 1024 ** 3


def utcnow():
    """Naive UTC timestamp, the form every TIMESTAMP column stores."""
    return datetime.now(pytz.utc).replace(tzinfo=None)


def _invite_code():
    return uuid.uuid4().hex[:8]


# User model
class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(100), unique=True)
    telegram_id = Column(BigInteger, unique=True)
    username = Column(String)
    is_admin = Column(Boolean, default=False)

    balance = Column(Money, default=Decimal('0'))
    commission = Column(Money, default=Decimal('0'))

    # Traffic (bytes)
    upload = Column(BigInteger, default=0)
    download = Column(BigInteger, default=0)
    transfer_enable = Column(BigInteger, default=0)

    group_id = Column(Integer, default=1)
    expired_at = Column(TIMESTAMP)

    invite_code = Column(String(32), unique=True, default=_invite_code)
    invited_by = Column(Integer, ForeignKey('users.id'), index=True)

    created_at = Column(TIMESTAMP, default=utcnow)

    orders = relationship("Order", back_populates="user")


# Plan model
class Plan(Base):
    __tablename__ = 'plans'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    price = Column(Money, nullable=False)
    duration = Column(Integer, nullable=False)  # days
    transfer = Column(BigInteger, nullable=False)  # GB
    speed_limit = Column(Integer, default=0)
    device_limit = Column(Integer, default=0)
    group_id = Column(Integer, default=1)
    is_active = Column(Boolean, default=True)
    sort = Column(Integer, default=0)


# Order model
class Order(Base):
    __tablename__ = 'orders'

    STATUS_PENDING = 'pending'
    STATUS_PAID = 'paid'
    STATUS_CANCELLED = 'cancelled'
    STATUS_REFUNDED = 'refunded'

    TYPE_PLAN = 'plan'
    TYPE_RECHARGE = 'recharge'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_no = Column(String(64), unique=True, nullable=False)
    type = Column(String(20), default=TYPE_PLAN)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('plans.id'), index=True)
    coupon_id = Column(Integer, ForeignKey('coupons.id'), index=True)
    trade_no = Column(String(128))
    pay_method = Column(String(32))
    amount = Column(Money, nullable=False)
    discount = Column(Money, default=Decimal('0'))
    paid = Column(Money, default=Decimal('0'))
    status = Column(String(16), default=STATUS_PENDING, index=True)
    paid_at = Column(TIMESTAMP)
    refunded_at = Column(TIMESTAMP)
    expired_at = Column(TIMESTAMP)
    remark = Column(Text)
    created_at = Column(TIMESTAMP, default=utcnow)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="orders")
    plan = relationship("Plan")

    def to_dict(self):
        return {
            'id': self.id,
            'order_no': self.order_no,
            'type': self.type,
            'user_id': self.user_id,
            'plan_id': self.plan_id,
            'coupon_id': self.coupon_id,
            'trade_no': self.trade_no,
            'pay_method': self.pay_method,
            'amount': str(self.amount),
            'discount': str(self.discount),
            'paid': str(self.paid),
            'status': self.status,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'refunded_at': self.refunded_at.isoformat() if self.refunded_at else None,
            'expired_at': self.expired_at.isoformat() if self.expired_at else None,
            'remark': self.remark,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


# Coupon model
class Coupon(Base):
    __tablename__ = 'coupons'

    TYPE_FIXED = 'fixed'
    TYPE_PERCENTAGE = 'percentage'
    TYPE_FREE_DAYS = 'free_days'

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False)
    type = Column(String(16), nullable=False)
    # fixed: amount off, percentage: percent off (10 = 10%), free_days: days granted
    value = Column(Money, nullable=False)
    min_amount = Column(Money, default=Decimal('0'))
    max_discount = Column(Money, default=Decimal('0'))  # percentage only, 0 = no cap
    limit_per_user = Column(Integer, default=1)  # 0 = unlimited
    total_limit = Column(Integer, default=0)  # 0 = unlimited
    used_count = Column(Integer, default=0)
    plan_ids = Column(String(255), default='')  # comma separated, empty = all plans
    start_at = Column(TIMESTAMP)
    expired_at = Column(TIMESTAMP)
    is_active = Column(Boolean, default=True)
    created_at = Column(TIMESTAMP, default=utcnow)


# InviteRecord model
class InviteRecord(Base):
    __tablename__ = 'invite_records'

    STATUS_PENDING = 'pending'
    STATUS_SETTLED = 'settled'

    id = Column(Integer, primary_key=True, autoincrement=True)
    inviter_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    invitee_id = Column(Integer, ForeignKey('users.id'), nullable=False, unique=True)
    commission = Column(Money, default=Decimal('0'))
    order_id = Column(Integer, ForeignKey('orders.id'), index=True)
    status = Column(String(16), default=STATUS_PENDING)
    created_at = Column(TIMESTAMP, default=utcnow)


# RechargeCode model
class RechargeCode(Base):
    __tablename__ = 'recharge_codes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=False)
    amount = Column(Money, nullable=False)
    used = Column(Boolean, default=False)
    used_by = Column(Integer, ForeignKey('users.id'), index=True)
    used_at = Column(TIMESTAMP)
    remark = Column(String(200))
    created_by = Column(Integer)
    created_at = Column(TIMESTAMP, default=utcnow)


# SystemLog model
class SystemLog(Base):
    __tablename__ = 'system_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    level = Column(String)
    module = Column(String)
    message = Column(String)
    details = Column(String)
    created_at = Column(TIMESTAMP, default=utcnow)


# ErrorLog model
class ErrorLog(Base):
    __tablename__ = 'error_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    error_type = Column(String)
    error_message = Column(String)
    traceback = Column(String)
    user_id = Column(Integer, ForeignKey('users.id'))
    created_at = Column(TIMESTAMP, default=utcnow)


class Database:
    def __init__(self, db_url):
        engine_kwargs = {}
        if db_url.startswith('sqlite'):
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if db_url in ('sqlite://', 'sqlite:///:memory:'):
                engine_kwargs['poolclass'] = StaticPool
        self.engine = create_engine(db_url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def transaction(self):
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _add(self, obj, label):
        try:
            with self.transaction() as session:
                session.add(obj)
            return obj
        except Exception as e:
            logger.error(f"Error creating {label}: {e}")
            raise

    def _get(self, model, obj_id):
        with self.transaction() as session:
            return session.get(model, obj_id)

    # User methods
    def create_user(self, email=None, telegram_id=None, username=None, is_admin=False, **fields):
        return self._add(
            User(email=email, telegram_id=telegram_id, username=username, is_admin=is_admin, **fields),
            'user'
        )

    def get_user_by_id(self, user_id: int):
        return self._get(User, user_id)

    def get_user_by_email(self, email: str):
        with self.transaction() as session:
            return session.query(User).filter_by(email=email).first()

    def get_user_by_invite_code(self, invite_code: str):
        with self.transaction() as session:
            return session.query(User).filter_by(invite_code=invite_code).first()

    def set_invited_by(self, user_id: int, inviter_id: int):
        with self.transaction() as session:
            return session.query(User).filter(User.id == user_id).update(
                {User.invited_by: inviter_id}, synchronize_session=False
            ) == 1

    def increment_user(self, user_id: int, **deltas):
        """Relative update, e.g. ``increment_user(1, balance=Decimal('5'))``."""
        values = {getattr(User, name): getattr(User, name) + delta for name, delta in deltas.items()}
        with self.transaction() as session:
            return session.query(User).filter(User.id == user_id).update(
                values, synchronize_session=False
            ) == 1

    def debit_balance(self, user_id: int, amount):
        """Take ``amount`` from the balance only if it covers it."""
        with self.transaction() as session:
            return session.query(User).filter(
                User.id == user_id,
                User.balance >= amount
            ).update({User.balance: User.balance - amount}, synchronize_session=False) == 1

    def grant_entitlement(self, user_id: int, extend_days: int, transfer_bytes: int, group_id: int = 0):
        """
        Extend expiry from the later of now and the current expiry, add quota
        and optionally move the user to ``group_id``.

        Runs in one transaction with the user row locked. Returns the updated
        user or None if it does not exist.
        """
        with self.transaction() as session:
            user = session.query(User).filter(User.id == user_id).with_for_update().first()
            if user is None:
                return None

            now = utcnow()
            base = user.expired_at if user.expired_at and user.expired_at > now else now
            values = {
                User.expired_at: base + timedelta(days=extend_days),
                User.transfer_enable: User.transfer_enable + transfer_bytes,
            }
            if group_id > 0:
                values[User.group_id] = group_id
            session.query(User).filter(User.id == user_id).update(values, synchronize_session=False)
            session.flush()
            session.refresh(user)
            return user

    # Plan methods
    def create_plan(self, name, price, duration, transfer, group_id=1, **fields):
        return self._add(
            Plan(name=name, price=Decimal(str(price)), duration=duration, transfer=transfer,
                 group_id=group_id, **fields),
            'plan'
        )

    def get_plan(self, plan_id: int):
        return self._get(Plan, plan_id)

    def get_active_plans(self):
        with self.transaction() as session:
            return session.query(Plan).filter_by(is_active=True).order_by(Plan.sort, Plan.id).all()

    # Order methods
    def create_order(self, order: Order):
        return self._add(order, 'order')

    def get_order(self, order_id: int):
        return self._get(Order, order_id)

    def get_order_by_no(self, order_no: str):
        with self.transaction() as session:
            return session.query(Order).filter_by(order_no=order_no).first()

    def get_user_orders(self, user_id: int):
        with self.transaction() as session:
            return session.query(Order).filter_by(user_id=user_id).order_by(Order.id.desc()).all()

    def list_orders(self, page: int, page_size: int, status=None, user_id=None):
        with self.transaction() as session:
            query = session.query(Order)
            if status is not None:
                query = query.filter(Order.status == status)
            if user_id is not None:
                query = query.filter(Order.user_id == user_id)
            total = query.count()
            orders = query.order_by(Order.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
            return orders, total

    def transition_order(self, order_id: int, from_status: str, to_status: str, **fields):
        """
        Move an order between states with one conditional UPDATE.

        ``fields`` are stamped in the same statement. Returns False when the
        order is no longer in ``from_status``.
        """
        values = {Order.status: to_status, Order.updated_at: utcnow()}
        for name, value in fields.items():
            values[getattr(Order, name)] = value
        with self.transaction() as session:
            return session.query(Order).filter(
                Order.id == order_id,
                Order.status == from_status
            ).update(values, synchronize_session=False) == 1

    def set_order_trade(self, order_id: int, trade_no: str, pay_method: str):
        with self.transaction() as session:
            session.query(Order).filter(Order.id == order_id).update(
                {Order.trade_no: trade_no, Order.pay_method: pay_method, Order.updated_at: utcnow()},
                synchronize_session=False
            )

    def delete_order(self, order_id: int, statuses):
        """Delete an order only while its status is one of ``statuses``."""
        with self.transaction() as session:
            return session.query(Order).filter(
                Order.id == order_id,
                Order.status.in_(statuses)
            ).delete(synchronize_session=False) == 1

    def count_paid_coupon_usage(self, user_id: int, coupon_id: int):
        with self.transaction() as session:
            return session.query(func.count(Order.id)).filter(
                Order.user_id == user_id,
                Order.coupon_id == coupon_id,
                Order.status == Order.STATUS_PAID
            ).scalar()

    def get_expired_pending_orders(self, now):
        with self.transaction() as session:
            return session.query(Order).filter(
                Order.status == Order.STATUS_PENDING,
                Order.expired_at < now
            ).all()

    # Coupon methods
    def create_coupon(self, coupon: Coupon):
        coupon.code = coupon.code.upper()
        return self._add(coupon, 'coupon')

    def get_coupon(self, coupon_id: int):
        return self._get(Coupon, coupon_id)

    def get_coupon_by_code(self, code: str):
        with self.transaction() as session:
            return session.query(Coupon).filter_by(code=code.upper()).first()

    def update_coupon(self, coupon_id: int, **fields):
        with self.transaction() as session:
            coupon = session.get(Coupon, coupon_id)
            if coupon is None:
                return None
            for name, value in fields.items():
                setattr(coupon, name, value)
            return coupon

    def delete_coupon(self, coupon_id: int):
        with self.transaction() as session:
            return session.query(Coupon).filter(Coupon.id == coupon_id).delete(synchronize_session=False) == 1

    def list_coupons(self, page: int, page_size: int, search: str = ''):
        with self.transaction() as session:
            query = session.query(Coupon)
            if search:
                query = query.filter(Coupon.code.like(f"%{search.upper()}%"))
            total = query.count()
            coupons = query.order_by(Coupon.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
            return coupons, total

    def increment_coupon_usage(self, coupon_id: int):
        """Bump ``used_count`` unless a positive ``total_limit`` is already reached."""
        with self.transaction() as session:
            return session.query(Coupon).filter(
                Coupon.id == coupon_id,
                or_(Coupon.total_limit == 0, Coupon.used_count < Coupon.total_limit)
            ).update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False) == 1

    # InviteRecord methods
    def create_invite_record(self, record: InviteRecord):
        return self._add(record, 'invite record')

    def get_invite_record_by_invitee(self, invitee_id: int):
        with self.transaction() as session:
            return session.query(InviteRecord).filter_by(invitee_id=invitee_id).first()

    def settle_invite_record(self, record_id: int, order_id: int, commission):
        """Fill in a pending record; False if another order already settled it."""
        with self.transaction() as session:
            return session.query(InviteRecord).filter(
                InviteRecord.id == record_id,
                InviteRecord.order_id.is_(None)
            ).update({
                InviteRecord.order_id: order_id,
                InviteRecord.commission: commission,
                InviteRecord.status: InviteRecord.STATUS_SETTLED,
            }, synchronize_session=False) == 1

    def get_invite_stats(self, inviter_id: int):
        with self.transaction() as session:
            base = session.query(InviteRecord).filter(InviteRecord.inviter_id == inviter_id)
            count = base.count()
            total = session.query(func.coalesce(func.sum(InviteRecord.commission), 0)).filter(
                InviteRecord.inviter_id == inviter_id
            ).scalar()
            pending = session.query(func.coalesce(func.sum(InviteRecord.commission), 0)).filter(
                InviteRecord.inviter_id == inviter_id,
                InviteRecord.status == InviteRecord.STATUS_PENDING
            ).scalar()
            cents = Decimal('0.01')
            return count, Decimal(str(total)).quantize(cents), Decimal(str(pending)).quantize(cents)

    def list_invite_records(self, inviter_id: int, page: int, page_size: int):
        with self.transaction() as session:
            query = session.query(InviteRecord, User.email).join(
                User, User.id == InviteRecord.invitee_id
            ).filter(InviteRecord.inviter_id == inviter_id)
            total = query.count()
            rows = query.order_by(InviteRecord.created_at.desc(), InviteRecord.id.desc()).offset(
                (page - 1) * page_size
            ).limit(page_size).all()
            return rows, total

    # RechargeCode methods
    def create_recharge_code(self, code, amount, remark=None, created_by=None):
        return self._add(
            RechargeCode(code=code, amount=amount, remark=remark, created_by=created_by),
            'recharge code'
        )

    def redeem_recharge_code(self, code: str, user_id: int):
        """
        Mark an unused code as used by ``user_id`` and credit its amount in one
        transaction. Returns the amount or None if the code is unknown or used.
        """
        with self.transaction() as session:
            recharge_code = session.query(RechargeCode).filter_by(code=code, used=False).first()
            if recharge_code is None:
                return None
            claimed = session.query(RechargeCode).filter(
                RechargeCode.id == recharge_code.id,
                RechargeCode.used == False  # noqa: E712
            ).update({
                RechargeCode.used: True,
                RechargeCode.used_by: user_id,
                RechargeCode.used_at: utcnow(),
            }, synchronize_session=False)
            if claimed != 1:
                return None
            session.query(User).filter(User.id == user_id).update(
                {User.balance: User.balance + recharge_code.amount}, synchronize_session=False
            )
            return recharge_code.amount

    def list_recharge_codes(self, page: int, page_size: int, used=None):
        with self.transaction() as session:
            query = session.query(RechargeCode)
            if used is not None:
                query = query.filter(RechargeCode.used == used)
            total = query.count()
            codes = query.order_by(RechargeCode.id.desc()).offset((page - 1) * page_size).limit(page_size).all()
            return codes, total

    def delete_unused_recharge_code(self, code_id: int):
        with self.transaction() as session:
            return session.query(RechargeCode).filter(
                RechargeCode.id == code_id,
                RechargeCode.used == False  # noqa: E712
            ).delete(synchronize_session=False) == 1

    # Log methods
    def log_system(self, level, module, message, details=None):
        """Persist an audit entry; failures are logged, never raised."""
        try:
            with self.transaction() as session:
                session.add(SystemLog(
                    level=level,
                    module=module,
                    message=message,
                    details=json.dumps(details, default=str) if details else None
                ))
        except SQLAlchemyError as e:
            logger.error(f"Error creating system log: {e}")

    def log_error(self, error_type, error_message, traceback, user_id=None):
        try:
            with self.transaction() as session:
                session.add(ErrorLog(
                    error_type=error_type,
                    error_message=error_message,
                    traceback=traceback,
                    user_id=user_id
                ))
        except SQLAlchemyError as e:
            logger.error(f"Error creating error log: {e}")

    def delete_logs_before(self, cutoff):
        with self.transaction() as session:
            system = session.query(SystemLog).filter(SystemLog.created_at < cutoff).delete(synchronize_session=False)
            errors = session.query(ErrorLog).filter(ErrorLog.created_at < cutoff).delete(synchronize_session=False)
            return system, errors
