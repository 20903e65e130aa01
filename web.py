"""
Payment notification endpoint.

Gateways call ``/api/v1/payment/notify/{method}``; each one gets the reply its
retry policy expects (plain text for redirect gateways, status codes for
webhooks).
"""
import logging

from aiohttp import web

from errors import PanelError, SettlementFailed, UnknownMethod
from payments import METHOD_STRIPE, get_gateway

logger = logging.getLogger(__name__)

ORDER_SERVICE = web.AppKey('order_service', object)
NOTIFIER = web.AppKey('notifier', object)


async def collect_params(request: web.Request, method: str):
    """Gather callback parameters the way each gateway sends them."""
    params = dict(request.query)
    if request.method != 'GET':
        if method == METHOD_STRIPE:
            params['payload'] = (await request.read()).decode('utf-8')
            params['sig_header'] = request.headers.get('Stripe-Signature', '')
        else:
            form = await request.post()
            params.update({key: value for key, value in form.items() if isinstance(value, str)})
    return params


def reply(status_body):
    status, body = status_body
    return web.Response(status=status, text=body)


async def payment_notify(request: web.Request):
    method = request.match_info['method']
    order_service = request.app[ORDER_SERVICE]

    try:
        gateway = get_gateway(order_service.gateways, method)
    except UnknownMethod as e:
        logger.warning(f"Notification for unknown method {method}")
        return web.json_response(e.to_dict(), status=404)

    params = await collect_params(request, method)
    try:
        order_service.handle_payment_notify(method, params)
    except SettlementFailed as e:
        logger.error(f"Settlement failed for {e.order_no}: {e.message}")
        notifier = request.app.get(NOTIFIER)
        if notifier is not None:
            await notifier.settlement_failed(e.order_no, e.message)
        return reply(gateway.failure_reply)
    except PanelError as e:
        logger.warning(f"Rejected {method} notification: {e.message}")
        return reply(gateway.failure_reply)

    return reply(gateway.success_reply)


def create_app(order_service, notifier=None):
    app = web.Application()
    app[ORDER_SERVICE] = order_service
    if notifier is not None:
        app[NOTIFIER] = notifier
    app.router.add_route('GET', '/api/v1/payment/notify/{method}', payment_notify)
    app.router.add_route('POST', '/api/v1/payment/notify/{method}', payment_notify)
    return app
