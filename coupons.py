import logging
import random
from decimal import Decimal, ROUND_HALF_UP

from advanced_config import COUPON_SETTINGS
from database import Coupon, utcnow
from errors import CouponNotFound, NotFound, ValidationFailed

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')

COUPON_TYPES = (Coupon.TYPE_FIXED, Coupon.TYPE_PERCENTAGE, Coupon.TYPE_FREE_DAYS)

# Fields an administrator may set on a coupon
EDITABLE_FIELDS = (
    'type', 'value', 'min_amount', 'max_discount', 'limit_per_user',
    'total_limit', 'plan_ids', 'start_at', 'expired_at', 'is_active',
)


def to_money(value):
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_plan_ids(plan_ids):
    """Parse a comma separated id list, skipping malformed tokens."""
    ids = set()
    for token in (plan_ids or '').split(','):
        token = token.strip()
        if not token:
            continue
        try:
            ids.add(int(token))
        except ValueError:
            logger.warning(f"Skipping malformed plan id in coupon scope: {token!r}")
    return ids


def check_amounts(fields):
    """Reject negative money fields of a coupon."""
    for name in ('value', 'min_amount', 'max_discount'):
        if fields.get(name) is not None and Decimal(str(fields[name])) < 0:
            raise ValidationFailed('invalid_value', f"Coupon {name} cannot be negative")


class CouponService:
    def __init__(self, db):
        self.db = db

    def verify(self, code: str, user_id: int, plan_id: int, amount):
        """
        Check ``code`` for ``user_id`` buying ``plan_id`` at ``amount``.

        Returns ``(coupon, discount)``. Read-only: usage is counted later by
        ``increment_usage`` once an order referencing the coupon is paid.
        Raises ``ValidationFailed`` with the reason of the first failed rule.
        """
        amount = to_money(amount)

        coupon = self.db.get_coupon_by_code(code)
        if coupon is None:
            raise CouponNotFound()

        if not coupon.is_active:
            raise ValidationFailed('disabled', 'Coupon is disabled')

        now = utcnow()
        if coupon.start_at is not None and now < coupon.start_at:
            raise ValidationFailed('not_yet_active', 'Coupon is not active yet')
        if coupon.expired_at is not None and now > coupon.expired_at:
            raise ValidationFailed('expired', 'Coupon has expired')

        if coupon.total_limit > 0 and coupon.used_count >= coupon.total_limit:
            raise ValidationFailed('exhausted', 'Coupon has been fully used')

        if coupon.limit_per_user > 0:
            used = self.db.count_paid_coupon_usage(user_id, coupon.id)
            if used >= coupon.limit_per_user:
                raise ValidationFailed('per_user_limit_reached', 'You have reached the usage limit for this coupon')

        allowed = parse_plan_ids(coupon.plan_ids)
        if (coupon.plan_ids or '').strip() and plan_id not in allowed:
            raise ValidationFailed('plan_not_eligible', 'Coupon cannot be used for this plan')

        if amount < coupon.min_amount:
            raise ValidationFailed('below_minimum', 'Order amount is below the coupon minimum')

        return coupon, self.compute_discount(coupon, amount)

    @staticmethod
    def compute_discount(coupon, amount):
        discount = Decimal('0')
        if coupon.type == Coupon.TYPE_FIXED:
            discount = Decimal(coupon.value)
        elif coupon.type == Coupon.TYPE_PERCENTAGE:
            discount = amount * Decimal(coupon.value) / 100
            if coupon.max_discount and coupon.max_discount > 0 and discount > coupon.max_discount:
                discount = Decimal(coupon.max_discount)
        # free_days grants time at settlement, no money off

        return to_money(max(Decimal('0'), min(discount, amount)))

    def increment_usage(self, coupon_id: int):
        incremented = self.db.increment_coupon_usage(coupon_id)
        if not incremented:
            logger.warning(f"Coupon {coupon_id} usage not incremented (missing or total limit reached)")
        return incremented

    # Administration
    def generate_code(self):
        charset = COUPON_SETTINGS['code_charset']
        return ''.join(random.choice(charset) for _ in range(COUPON_SETTINGS['code_length']))

    def create(self, type_, value, code=None, **fields):
        if type_ not in COUPON_TYPES:
            raise ValidationFailed('invalid_type', f"Unknown coupon type: {type_}")
        code = (code or self.generate_code()).upper()
        if self.db.get_coupon_by_code(code) is not None:
            raise ValidationFailed('duplicate_code', 'Coupon code already exists')

        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailed('invalid_field', f"Unknown coupon fields: {', '.join(sorted(unknown))}")
        check_amounts(dict(fields, value=value))

        coupon = Coupon(code=code, type=type_, value=to_money(value), **fields)
        return self.db.create_coupon(coupon)

    def update(self, coupon_id: int, code=None, **fields):
        coupon = self.db.get_coupon(coupon_id)
        if coupon is None:
            raise NotFound('Coupon does not exist')

        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailed('invalid_field', f"Unknown coupon fields: {', '.join(sorted(unknown))}")
        if 'type' in fields and fields['type'] not in COUPON_TYPES:
            raise ValidationFailed('invalid_type', f"Unknown coupon type: {fields['type']}")
        check_amounts(fields)

        if code and code.upper() != coupon.code:
            if self.db.get_coupon_by_code(code) is not None:
                raise ValidationFailed('duplicate_code', 'Coupon code already exists')
            fields['code'] = code.upper()

        return self.db.update_coupon(coupon_id, **fields)

    def delete(self, coupon_id: int):
        if not self.db.delete_coupon(coupon_id):
            raise NotFound('Coupon does not exist')

    def list(self, page=1, page_size=20, search=''):
        return self.db.list_coupons(max(page, 1), max(page_size, 1), search)
