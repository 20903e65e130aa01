import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError

from advanced_config import RECHARGE_SETTINGS
from coupons import to_money
from errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)


class RechargeService:
    """Balance top-up with pre-generated redeemable codes."""

    def __init__(self, db):
        self.db = db

    def redeem(self, user_id: int, code: str):
        amount = self.db.redeem_recharge_code(code, user_id)
        if amount is None:
            raise ValidationFailed('invalid_code', 'Recharge code is invalid or already used')
        logger.info(f"User {user_id} redeemed recharge code {code} for {amount}")
        return amount

    def create_codes(self, amount, count: int, remark=None, creator_id=None):
        amount = to_money(amount)
        if amount <= 0:
            raise ValidationFailed('invalid_amount', 'Amount must be positive')
        if not 1 <= count <= RECHARGE_SETTINGS['max_batch']:
            raise ValidationFailed('invalid_count', f"Count must be between 1 and {RECHARGE_SETTINGS['max_batch']}")

        codes = []
        for _ in range(count):
            code = uuid.uuid4().hex[:RECHARGE_SETTINGS['code_length']]
            try:
                self.db.create_recharge_code(code, amount, remark=remark, created_by=creator_id)
            except SQLAlchemyError as e:
                logger.error(f"Failed to create recharge code: {e}")
                continue
            codes.append(code)
        return codes

    def list_codes(self, page=1, page_size=20, used=None):
        return self.db.list_recharge_codes(max(page, 1), max(page_size, 1), used)

    def delete_code(self, code_id: int):
        if not self.db.delete_unused_recharge_code(code_id):
            raise NotFound('Recharge code does not exist or is already used')
