import json
import logging
from decimal import Decimal

import stripe

from tradepay.errors import UpstreamError
from tradepay.gateway import GatewayCapture, GatewayIntent, GatewayNotification, PaymentGateway, lower_headers

logger = logging.getLogger(__name__)

PAID_EVENTS = frozenset({"payment_intent.succeeded"})

# currencies Stripe expects in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({"jpy", "krw", "vnd", "clp", "pyg", "ugx", "xaf", "xof"})


def to_minor_units(amount, currency):
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(str(amount)))
    return int(Decimal(str(amount)) * 100)


def _raise_upstream(exc, message):
    logger.error("%s: %s", message, exc)
    raise UpstreamError(
        f"{message}: {exc.user_message or exc}",
        provider_status=exc.http_status,
        provider_body=exc.json_body,
    ) from exc


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key, webhook_secret=""):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_intent(self, amount, currency, order_id, description):
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount, currency),
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                description=description,
                metadata={"order_id": order_id},
                idempotency_key=f"intent-{order_id}",
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            _raise_upstream(exc, "Stripe create intent error")

        logger.info("Stripe PaymentIntent %s created for order %s", intent.id, order_id)
        return GatewayIntent(provider=self.name, provider_order_id=intent.id, client_secret=intent.client_secret)

    def capture(self, provider_order_id):
        # automatic capture: this only syncs the intent status
        try:
            intent = stripe.PaymentIntent.retrieve(provider_order_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            _raise_upstream(exc, "Stripe retrieve intent error")

        return GatewayCapture(
            provider_order_id=provider_order_id,
            capture_id=getattr(intent, "latest_charge", None),
            completed=intent.status == "succeeded",
            status=intent.status,
        )

    def refund(self, provider_order_id, capture_id=None):
        try:
            return stripe.Refund.create(payment_intent=provider_order_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            _raise_upstream(exc, "Stripe refund error")

    def verify_notification(self, headers, raw_body):
        if not self.webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET not set, webhook signature verification skipped")
            return True

        signature = lower_headers(headers).get("stripe-signature")
        try:
            stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except ValueError:
            logger.warning("Stripe webhook rejected: invalid payload")
            return False
        except stripe.SignatureVerificationError:
            logger.warning("Stripe webhook rejected: invalid signature")
            return False
        return True

    def parse_notification(self, raw_body):
        try:
            event = json.loads(raw_body)
        except ValueError:
            return None
        if not isinstance(event, dict) or not event.get("type"):
            return None

        intent = (event.get("data") or {}).get("object") or {}
        return GatewayNotification(
            provider=self.name,
            event_id=event.get("id"),
            event_type=event["type"],
            paid=event["type"] in PAID_EVENTS,
            provider_order_id=intent.get("id"),
            capture_id=intent.get("latest_charge"),
            order_id=(intent.get("metadata") or {}).get("order_id"),
            raw=event,
        )
