import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy.exc import IntegrityError

from database import InviteRecord
from errors import NotFound, ValidationFailed

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')


def mask_email(email):
    """Hide the middle of an address: ``alice@example.com`` -> ``al***@example.com``."""
    if not email or len(email) < 5:
        return email
    at_index = email.find('@')
    if at_index <= 2:
        return email
    return email[:2] + '***' + email[at_index:]


class InviteService:
    def __init__(self, db, settings):
        self.db = db
        self.settings = settings

    @property
    def commission_rate(self):
        return Decimal(str(self.settings.get('commission_rate', 0)))

    def _commission(self, order_amount):
        return (Decimal(str(order_amount)) * self.commission_rate).quantize(CENTS, rounding=ROUND_HALF_UP)

    def register_relationship(self, invitee_id: int, invite_code: str):
        """Link a freshly registered user to the owner of ``invite_code``."""
        if not invite_code:
            return None

        inviter = self.db.get_user_by_invite_code(invite_code)
        if inviter is None:
            raise NotFound('Invalid invite code')
        if inviter.id == invitee_id:
            raise ValidationFailed('self_invite', 'You cannot use your own invite code')

        if not self.db.set_invited_by(invitee_id, inviter.id):
            raise NotFound('User does not exist')

        record = self.db.create_invite_record(InviteRecord(
            inviter_id=inviter.id,
            invitee_id=invitee_id,
            commission=Decimal('0'),
            status=InviteRecord.STATUS_PENDING,
        ))
        logger.info(f"User {invitee_id} registered with invite code of user {inviter.id}")
        return record

    def process_commission(self, invitee_id: int, order_amount, order_id: int):
        """
        Credit the inviter of ``invitee_id`` once, on the invitee's first
        settled order. Returns the commission credited, or None.
        """
        if not self.settings.get('enabled'):
            return None

        invitee = self.db.get_user_by_id(invitee_id)
        if invitee is None or not invitee.invited_by:
            return None

        commission = self._commission(order_amount)
        record = self.db.get_invite_record_by_invitee(invitee_id)

        if record is not None:
            if record.order_id is not None:
                return None
            if not self.db.settle_invite_record(record.id, order_id, commission):
                return None
        else:
            try:
                self.db.create_invite_record(InviteRecord(
                    inviter_id=invitee.invited_by,
                    invitee_id=invitee_id,
                    commission=commission,
                    order_id=order_id,
                    status=InviteRecord.STATUS_SETTLED,
                ))
            except IntegrityError:
                # another settlement created the record first
                return None

        self.db.increment_user(invitee.invited_by, commission=commission)
        logger.info(
            f"Credited commission {commission} to user {invitee.invited_by} "
            f"for order {order_id} of user {invitee_id}"
        )
        return commission

    def get_invite_info(self, user_id: int, base_url: str):
        user = self.db.get_user_by_id(user_id)
        if user is None:
            raise NotFound('User does not exist')

        count, total, pending = self.db.get_invite_stats(user_id)
        return {
            'invite_code': user.invite_code,
            'invite_link': f"{base_url}/register?code={user.invite_code}",
            'invite_count': count,
            'total_commission': total,
            'pending_commission': pending,
        }

    def get_invite_records(self, user_id: int, page=1, page_size=20):
        rows, total = self.db.list_invite_records(user_id, max(page, 1), max(page_size, 1))
        records = [
            {
                'id': record.id,
                'email': mask_email(email),
                'commission': record.commission,
                'status': record.status,
                'created_at': record.created_at,
            }
            for record, email in rows
        ]
        return records, total
