"""
Billing error taxonomy.
Routers translate these into HTTP responses; the webhook router never lets one escape.
"""


class BillingError(Exception):
    """Base class for errors raised by the billing services."""


class ValidationError(BillingError):
    """Bad plan id, malformed coupon code, price out of range, malformed gateway metadata."""


class NotFoundError(BillingError):
    pass


class GatewayError(BillingError):
    pass


class GatewayUndetermined(GatewayError):
    """Timeout, connection failure or 5xx: the charge may or may not exist at the gateway."""


class GatewayDeclined(GatewayError):
    """The gateway answered definitively and refused the charge."""

    def __init__(self, message: str, charge_id: str = None, status_detail: str = None):
        super().__init__(message)
        self.charge_id = charge_id
        self.status_detail = status_detail or message
