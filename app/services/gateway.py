"""
Stripe gateway adapter.

Checkout sessions hand the user to Stripe's hosted UI; the session id is what
the client holds. Each charge attempt is a PaymentIntent confirmed with the
client's tokenized PaymentMethod, and the PaymentIntent id is the charge id.

Nothing above this module sees a Stripe type or exception: responses are
normalized into GatewayCharge / GatewaySession and errors into
GatewayUndetermined / GatewayDeclined.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from app.core.config import settings
from app.models.payment_intent import IntentStatus
from app.services.errors import GatewayDeclined, GatewayError, GatewayUndetermined, ValidationError

logger = logging.getLogger(__name__)

_APPROVED = {"succeeded", "approved"}
_IN_REVIEW = {
    "processing", "requires_action", "requires_capture", "requires_confirmation",
    "pending", "in_process", "authorized", "in_mediation",
    # Not terminal: hosted checkout lets the customer retry another card on the same PaymentIntent
    "requires_payment_method",
}
_DECLINED = {"canceled", "cancelled", "rejected"}


def map_gateway_status(raw_status: Optional[str]) -> IntentStatus:
    """Map a raw gateway status onto the intent state machine. Unknown statuses stay in review."""
    status = (raw_status or "").lower()
    if status in _APPROVED:
        return IntentStatus.APPROVED
    if status in _DECLINED:
        return IntentStatus.DECLINED
    if status not in _IN_REVIEW:
        logger.warning(f"[CHARGE] Unknown gateway status '{raw_status}', treating as in_review")
    return IntentStatus.IN_REVIEW


def map_confirmation_status(raw_status: Optional[str]) -> IntentStatus:
    """Status of a charge this service just confirmed with the client's token; a refused card is a decline."""
    if (raw_status or "").lower() == "requires_payment_method":
        return IntentStatus.DECLINED
    return map_gateway_status(raw_status)


@dataclass
class GatewaySession:
    id: str
    url: Optional[str] = None


@dataclass
class GatewayCharge:
    id: str
    status: str
    status_detail: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def _as_dict(obj) -> Dict[str, Any]:
    if not obj:
        return {}
    if isinstance(obj, dict):
        return dict(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return {key: obj[key] for key in obj.keys()}


def _charge_from_payment_intent(pi) -> GatewayCharge:
    last_error = getattr(pi, "last_payment_error", None)
    detail = None
    if last_error:
        detail = (
            getattr(last_error, "decline_code", None)
            or getattr(last_error, "code", None)
            or getattr(last_error, "message", None)
        )
    elif getattr(pi, "cancellation_reason", None):
        detail = pi.cancellation_reason
    return GatewayCharge(
        id=pi["id"],
        status=pi["status"],
        status_detail=detail or pi["status"],
        amount_cents=getattr(pi, "amount", None),
        currency=getattr(pi, "currency", None),
        metadata=_as_dict(getattr(pi, "metadata", None)),
    )


def _stringify_metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
    """Stripe metadata values are strings; None becomes empty."""
    return {key: "" if value is None else str(value) for key, value in metadata.items()}


class StripeGateway:
    def __init__(self, api_key: Optional[str] = None, timeout_seconds: Optional[int] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.timeout_seconds = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS
        if self.api_key:
            stripe.api_key = self.api_key
        # Explicit gateway timeout, independent of the caller's HTTP timeout
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout_seconds)
        stripe.max_network_retries = 0

    def _require_key(self):
        if not self.api_key:
            raise GatewayError("Stripe secret key not configured")

    def create_session(
        self,
        amount_cents: int,
        currency: str,
        product_name: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
        customer_email: Optional[str] = None,
    ) -> GatewaySession:
        self._require_key()
        base_url = settings.FRONTEND_URL.rstrip("/")
        meta = _stringify_metadata(metadata)
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount_cents,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }],
                customer_email=customer_email or None,
                success_url=f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base_url}/payment/failure?session_id={{CHECKOUT_SESSION_ID}}",
                metadata=meta,
                # Hosted-checkout charges carry the same metadata, so the webhook can reconstruct them
                payment_intent_data={"metadata": meta},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._translate(exc)
        return GatewaySession(id=session["id"], url=getattr(session, "url", None))

    def submit_charge(
        self,
        amount_cents: int,
        currency: str,
        instrument_token: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
        description: Optional[str] = None,
        receipt_email: Optional[str] = None,
    ) -> GatewayCharge:
        self._require_key()
        try:
            pi = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                payment_method=instrument_token,
                confirm=True,
                description=description,
                receipt_email=receipt_email or None,
                metadata=_stringify_metadata(metadata),
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise self._translate(exc)
        return _charge_from_payment_intent(pi)

    def retrieve_charge(self, charge_id: str) -> GatewayCharge:
        """Authoritative state of a charge; webhook payloads are never trusted beyond the id."""
        self._require_key()
        try:
            pi = stripe.PaymentIntent.retrieve(charge_id)
        except stripe.StripeError as exc:
            raise self._translate(exc)
        return _charge_from_payment_intent(pi)

    def find_session_id(self, charge_id: str) -> Optional[str]:
        """Checkout Session that created a PaymentIntent; None for charges confirmed directly with a token."""
        self._require_key()
        try:
            sessions = stripe.checkout.Session.list(payment_intent=charge_id, limit=1)
        except stripe.StripeError as exc:
            raise self._translate(exc)
        data = sessions["data"] if sessions else []
        return data[0]["id"] if data else None

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[Dict[str, Any]]:
        """
        Verify the delivery signature when a signing secret is configured.
        Returns the parsed event, or None when verification is not configured.
        Raises ValidationError on a malformed or badly signed delivery.
        """
        if not settings.STRIPE_WEBHOOK_SECRET or not signature:
            return None
        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError as exc:
            raise ValidationError(f"Invalid payload: {exc}")
        except stripe.SignatureVerificationError as exc:
            raise ValidationError(f"Invalid signature: {exc}")
        return _as_dict(event)

    @staticmethod
    def _translate(exc: Exception) -> GatewayError:
        if isinstance(exc, stripe.CardError):
            error = getattr(exc, "error", None)
            pi = getattr(error, "payment_intent", None) if error else None
            charge_id = pi["id"] if pi else None
            detail = getattr(exc, "code", None) or getattr(exc, "user_message", None) or str(exc)
            logger.info(f"[CHARGE] Gateway declined charge {charge_id}: {detail}")
            return GatewayDeclined(str(exc), charge_id=charge_id, status_detail=detail)
        if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
            logger.warning(f"[CHARGE] Gateway unreachable: {exc}")
            return GatewayUndetermined(str(exc))
        if isinstance(exc, stripe.APIError) or (getattr(exc, "http_status", None) or 0) >= 500:
            logger.warning(f"[CHARGE] Gateway error {getattr(exc, 'http_status', None)}: {exc}")
            return GatewayUndetermined(str(exc))
        if isinstance(exc, stripe.InvalidRequestError):
            return GatewayDeclined(str(exc), status_detail=getattr(exc, "code", None) or "invalid_request")
        logger.error(f"[CHARGE] Unexpected gateway error: {exc}")
        return GatewayError(str(exc))
