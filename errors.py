"""
Error taxonomy for the order and payment engine.

Every error carries a stable ``code`` and ``message`` so the HTTP layer can map
it to a structured response without inspecting the exception type.
"""

ERROR_CODES = {
    'E001': 'Resource not found',
    'E002': 'Operation not allowed in current state',
    'E003': 'Permission denied',
    'E004': 'Validation failed',
    'E005': 'Payment gateway error',
    'E006': 'Payment notification rejected',
    'E007': 'Settlement failed',
}


class PanelError(Exception):
    code = 'E000'
    message = 'Internal error'

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_dict(self):
        return {'error': True, 'code': self.code, 'message': self.message}


class NotFound(PanelError):
    code = 'E001'
    message = ERROR_CODES['E001']


class InvalidState(PanelError):
    code = 'E002'
    message = ERROR_CODES['E002']


class Forbidden(PanelError):
    code = 'E003'
    message = ERROR_CODES['E003']


class ValidationFailed(PanelError):
    """Rule violation; ``reason`` names which rule."""
    code = 'E004'
    message = ERROR_CODES['E004']

    def __init__(self, reason, message=None):
        self.reason = reason
        super().__init__(message)

    def to_dict(self):
        data = super().to_dict()
        data['reason'] = self.reason
        return data


class CouponNotFound(NotFound, ValidationFailed):
    def __init__(self, message='Coupon does not exist'):
        ValidationFailed.__init__(self, 'not_found', message)


class GatewayError(PanelError):
    code = 'E005'
    message = ERROR_CODES['E005']


class GatewayDisabled(GatewayError):
    message = 'Payment gateway is disabled'


class UnknownMethod(GatewayError):
    def __init__(self, method):
        self.method = method
        super().__init__(f"Unknown payment method: {method}")


class SignatureInvalid(PanelError):
    code = 'E006'
    message = ERROR_CODES['E006']


class NotSuccessful(SignatureInvalid):
    message = 'Gateway reports the trade as not successful'


class UnrecognizedEvent(SignatureInvalid):
    """Authentic notification of an event type that is not a payment."""

    def __init__(self, event_type, message=None):
        self.event_type = event_type
        super().__init__(message or f"Ignored event type: {event_type}")


class SettlementFailed(PanelError):
    code = 'E007'
    message = ERROR_CODES['E007']

    def __init__(self, order_no, message=None):
        self.order_no = order_no
        super().__init__(message)
