"""
Payment gateway adapters.

Every gateway family implements two operations: ``pay`` starts a payment for an
order and ``verify`` authenticates an inbound notification. The order service
picks an adapter with ``get_gateway`` from the table built by ``build_gateways``.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional
from urllib.parse import urlencode

import stripe

from errors import (
    GatewayDisabled, GatewayError, NotSuccessful, SignatureInvalid, UnknownMethod,
    UnrecognizedEvent
)

logger = logging.getLogger(__name__)

METHOD_STRIPE = 'stripe'
METHOD_ALIPAY = 'alipay'
METHOD_WECHAT = 'wxpay'
METHOD_BALANCE = 'balance'

CONTENT_URL = 'url'
CONTENT_BALANCE = 'balance'


@dataclass
class PayRequest:
    order_no: str
    amount: Decimal
    description: str
    client_ip: str
    method: str
    user_id: Optional[int] = None


@dataclass
class PayResponse:
    pay_url: str
    content_type: str
    trade_no: str = ''


@dataclass
class Notification:
    order_no: str
    amount: Decimal
    # method token the gateway reports, when one account serves several
    method: Optional[str] = None


class PaymentGateway(ABC):
    # Replies the gateway expects from the notify endpoint: (status, body)
    success_reply = (200, 'success')
    failure_reply = (400, 'fail')

    def __init__(self, config: Dict):
        self.config = config

    @property
    def enabled(self):
        return bool(self.config.get('enabled'))

    @abstractmethod
    def pay(self, request: PayRequest) -> PayResponse:
        pass

    @abstractmethod
    def verify(self, params: Dict[str, str]) -> Notification:
        pass


class EPayGateway(PaymentGateway):
    """
    Redirect gateway signed with MD5 over the sorted parameter set.

    One merchant account serves several method tokens (alipay, wxpay); the
    token travels as the ``type`` parameter.
    """
    SIGN_FIELDS = ('sign', 'sign_type')

    def sign(self, params: Dict[str, str]) -> str:
        payload = '&'.join(f"{key}={params[key]}" for key in sorted(params))
        return hashlib.md5((payload + self.config['key']).encode('utf-8')).hexdigest()

    def pay(self, request: PayRequest) -> PayResponse:
        if not self.enabled:
            raise GatewayDisabled('EPay is not enabled')

        params = {
            'pid': self.config['pid'],
            'type': request.method,
            'out_trade_no': request.order_no,
            'notify_url': self.config['notify_url'],
            'return_url': self.config['return_url'],
            'name': request.description,
            'money': f"{request.amount:.2f}",
            'clientip': request.client_ip or '',
        }
        params['sign'] = self.sign(params)
        params['sign_type'] = 'MD5'

        return PayResponse(
            pay_url=f"{self.config['url']}submit.php?{urlencode(params)}",
            content_type=CONTENT_URL,
        )

    def verify(self, params: Dict[str, str]) -> Notification:
        received = params.get('sign', '')
        if not received:
            raise SignatureInvalid('Missing signature')

        signed = {k: v for k, v in params.items() if k not in self.SIGN_FIELDS and v != ''}
        if not hmac.compare_digest(self.sign(signed), received):
            raise SignatureInvalid('Invalid signature')

        if params.get('trade_status') != 'TRADE_SUCCESS':
            raise NotSuccessful()

        try:
            amount = Decimal(params.get('money') or '0')
        except InvalidOperation:
            amount = Decimal('0')
        return Notification(
            order_no=params.get('out_trade_no', ''),
            amount=amount,
            method=params.get('type') or None,
        )


class StripeGateway(PaymentGateway):
    """Hosted checkout sessions confirmed by signed webhooks."""
    PAID_EVENT = 'checkout.session.completed'

    success_reply = (200, '')
    failure_reply = (400, '')

    def pay(self, request: PayRequest) -> PayResponse:
        if not self.enabled:
            raise GatewayDisabled('Stripe is not enabled')

        try:
            session = stripe.checkout.Session.create(
                api_key=self.config['api_key'],
                payment_method_types=['card'],
                line_items=[{
                    'price_data': {
                        'currency': self.config.get('currency', 'cny'),
                        'product_data': {'name': request.description},
                        'unit_amount': int((request.amount * 100).to_integral_value()),
                    },
                    'quantity': 1,
                }],
                mode='payment',
                success_url=self.config['success_url'],
                cancel_url=self.config['cancel_url'],
                client_reference_id=request.order_no,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session failed for {request.order_no}: {e}")
            raise GatewayError(f"Stripe error: {e}")

        return PayResponse(pay_url=session.url, content_type=CONTENT_URL, trade_no=session.id)

    def verify(self, params: Dict[str, str]) -> Notification:
        try:
            event = stripe.Webhook.construct_event(
                params.get('payload', ''), params.get('sig_header', ''), self.config['webhook_key']
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalid(f"Invalid webhook signature: {e}")
        except ValueError as e:
            raise SignatureInvalid(f"Malformed webhook payload: {e}")

        if event['type'] != self.PAID_EVENT:
            raise UnrecognizedEvent(event['type'])

        session = event['data']['object']
        reference = session['client_reference_id'] if 'client_reference_id' in session else None
        if not reference:
            # sessions created outside the panel, e.g. payment links
            raise UnrecognizedEvent(event['type'], 'Completed session carries no order reference')
        return Notification(
            order_no=reference,
            amount=Decimal(session['amount_total']) / 100,
        )


class BalanceGateway(PaymentGateway):
    """Pays from the user's stored balance; settles at once, never notifies."""

    def __init__(self, config: Dict, db):
        super().__init__(config)
        self.db = db

    def pay(self, request: PayRequest) -> PayResponse:
        if not self.enabled:
            raise GatewayDisabled('Balance payment is not enabled')
        if request.user_id is None:
            raise GatewayError('Balance payment requires a user')
        if not self.db.debit_balance(request.user_id, request.amount):
            raise GatewayError('Insufficient balance')
        return PayResponse(pay_url='', content_type=CONTENT_BALANCE)

    def refund(self, user_id: int, amount):
        self.db.increment_user(user_id, balance=amount)

    def verify(self, params: Dict[str, str]) -> Notification:
        raise SignatureInvalid('Balance payments do not send notifications')


def build_gateways(payment_config: Dict, db) -> Dict[str, PaymentGateway]:
    epay = EPayGateway(payment_config['epay'])
    return {
        METHOD_ALIPAY: epay,
        METHOD_WECHAT: epay,
        METHOD_STRIPE: StripeGateway(payment_config['stripe']),
        METHOD_BALANCE: BalanceGateway(payment_config.get('balance', {'enabled': True}), db),
    }


def get_gateway(gateways: Dict[str, PaymentGateway], method: str) -> PaymentGateway:
    gateway = gateways.get(method)
    if gateway is None:
        raise UnknownMethod(method)
    return gateway
