import json
import logging
from typing import Any

import stripe
from starlette.concurrency import run_in_threadpool

from app.core.config import Settings
from app.core.errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)


def construct_event(raw_body: bytes, signature: str | None, settings: Settings) -> dict[str, Any]:
    """
    Verify the `Stripe-Signature` header and return the decoded event as a plain dict.
    """
    if not signature:
        raise ValidationError("Missing stripe-signature header")
    try:
        payload = raw_body.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload,
            signature,
            settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance_seconds,
        )
        event = json.loads(payload)
    except (stripe.SignatureVerificationError, UnicodeDecodeError, ValueError) as exc:
        logger.warning("Webhook signature verification failed: %s", type(exc).__name__)
        raise ValidationError("Webhook signature verification failed") from exc
    if not isinstance(event, dict):
        raise ValidationError("Malformed event payload")
    return event


def _as_dict(obj: Any) -> dict[str, Any] | None:
    if obj is None:
        return None
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeGateway:
    """Thin async facade over the Stripe SDK; every method returns plain dicts."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._client = (
            stripe.StripeClient(settings.stripe_secret_key, stripe_version=settings.stripe_api_version)
            if settings.stripe_secret_key
            else None
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        if not self._client:
            return None
        sub = await run_in_threadpool(self._client.subscriptions.retrieve, subscription_id)
        return _as_dict(sub)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any] | None:
        if not self._client:
            return None
        pi = await run_in_threadpool(
            self._client.payment_intents.retrieve,
            payment_intent_id,
            {"expand": ["latest_charge"]},
        )
        return _as_dict(pi)

    async def retrieve_customer_email(self, customer_id: str) -> str | None:
        if not self._client:
            return None
        customer = await run_in_threadpool(self._client.customers.retrieve, customer_id)
        data = _as_dict(customer) or {}
        return data.get("email")

    async def cancel_subscription(self, subscription_id: str, immediate: bool = True) -> dict[str, Any]:
        """
        Cancel upstream. Returns a note dict when Stripe no longer knows the
        subscription; any other failure raises ExternalServiceError.
        """
        if not self._client:
            raise ExternalServiceError("Stripe não configurado")
        try:
            if immediate:
                result = await run_in_threadpool(self._client.subscriptions.cancel, subscription_id)
            else:
                result = await run_in_threadpool(
                    self._client.subscriptions.update,
                    subscription_id,
                    {"cancel_at_period_end": True},
                )
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing" or "No such subscription" in str(exc.user_message or exc):
                logger.info("Stripe subscription %s not found, cancelling locally only", subscription_id)
                return {"note": "stripe_subscription_not_found", "subscriptionId": subscription_id}
            raise ExternalServiceError(detail={"stripe_code": exc.code}) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe cancel error for %s: %s", subscription_id, type(exc).__name__)
            raise ExternalServiceError() from exc
        return _as_dict(result) or {}


def payment_intent_confirmed(pi: dict[str, Any] | None) -> bool:
    if not pi:
        return False
    if pi.get("status") == "succeeded":
        return True
    charges = (pi.get("charges") or {}).get("data") or []
    latest = pi.get("latest_charge")
    if isinstance(latest, dict):
        charges = [*charges, latest]
    return any(c and (c.get("paid") is True or c.get("status") == "succeeded") for c in charges)
