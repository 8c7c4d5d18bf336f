"""PayPal REST adapter. Only the token request is retried."""
import json
import logging
import threading
import time

import httpx

from tradepay.errors import TRANSIENT_UPSTREAM_STATUSES, UpstreamError
from tradepay.gateway import GatewayCapture, GatewayIntent, GatewayNotification, PaymentGateway, lower_headers

logger = logging.getLogger(__name__)

PAID_EVENTS = frozenset({"PAYMENT.CAPTURE.COMPLETED", "CHECKOUT.ORDER.COMPLETED"})

SIGNATURE_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)

TOKEN_EXPIRY_MARGIN = 60
TOKEN_RETRIES = 1
RETRY_BACKOFF = 0.5


class PayPalGateway(PaymentGateway):
    name = "paypal"

    def __init__(self, client_id, client_secret, base_url, webhook_id="",
                 client_base_url="http://localhost:5173", timeout=10.0, client=None,
                 retry_backoff=RETRY_BACKOFF):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self.webhook_id = webhook_id
        self.client_base_url = client_base_url.rstrip("/")
        self.retry_backoff = retry_backoff
        self.http = client or httpx.Client(timeout=httpx.Timeout(timeout, connect=5.0))

        self._token = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def close(self):
        self.http.close()

    # --- access token ---

    def access_token(self):
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at:
                return self._token

            if not self.client_id or not self.client_secret:
                raise UpstreamError("PayPal credentials not configured (CLIENT_ID/SECRET missing)")

            data = self._fetch_token()
            self._token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
            self._token_expires_at = time.time() + max(expires_in - TOKEN_EXPIRY_MARGIN, TOKEN_EXPIRY_MARGIN)
            logger.debug("PayPal access token cached for %ss", expires_in)
            return self._token

    def _fetch_token(self):
        for attempt in range(TOKEN_RETRIES + 1):
            response = self._send(
                "POST",
                "/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            if response.status_code in TRANSIENT_UPSTREAM_STATUSES and attempt < TOKEN_RETRIES:
                logger.warning("PayPal token request got %s, retrying", response.status_code)
                time.sleep(self.retry_backoff * (2 ** attempt))
                continue
            return self._json_or_raise(response, "PayPal token error")

    # --- REST calls ---

    def create_intent(self, amount, currency, order_id, description):
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order_id,
                    "custom_id": order_id,
                    "description": description or f"Order {order_id}",
                    "amount": {"currency_code": currency, "value": f"{float(amount):.2f}"},
                }
            ],
            "application_context": {
                "user_action": "PAY_NOW",
                "return_url": f"{self.client_base_url}/orders/{order_id}?paypal_return=1",
                "cancel_url": f"{self.client_base_url}/orders/{order_id}?paypal_cancel=1",
            },
        }
        data = self._json_or_raise(
            self._send("POST", "/v2/checkout/orders", json=payload,
                       headers=self._bearer(request_id=f"intent-{order_id}")),
            "PayPal create order error",
        )

        approve = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approve:
            raise UpstreamError("No approve link from PayPal", provider_body=data)

        logger.info("PayPal order %s created for order %s", data["id"], order_id)
        return GatewayIntent(provider=self.name, provider_order_id=data["id"], approve_url=approve)

    def capture(self, provider_order_id):
        data = self._json_or_raise(
            self._send("POST", f"/v2/checkout/orders/{provider_order_id}/capture", json={},
                       headers=self._bearer(request_id=f"capture-{provider_order_id}")),
            "PayPal capture error",
        )
        captures = _captures_of(data)
        capture = captures[0] if captures else {}
        status = capture.get("status") or data.get("status", "")
        return GatewayCapture(
            provider_order_id=provider_order_id,
            capture_id=capture.get("id"),
            completed=status == "COMPLETED",
            status=status,
        )

    def refund(self, provider_order_id, capture_id=None):
        if not capture_id:
            raise UpstreamError("PayPal refund needs a capture id", provider_body={"order": provider_order_id})
        return self._json_or_raise(
            self._send("POST", f"/v2/payments/captures/{capture_id}/refund", json={},
                       headers=self._bearer(request_id=f"refund-{capture_id}")),
            "PayPal refund error",
        )

    # --- webhooks ---

    def verify_notification(self, headers, raw_body):
        if not self.webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID not set, webhook signature verification skipped")
            return True

        headers = lower_headers(headers)
        missing = [h for h in SIGNATURE_HEADERS if not headers.get(h)]
        if missing:
            logger.warning("PayPal webhook rejected: missing headers %s", ", ".join(missing))
            return False

        try:
            event = json.loads(raw_body)
        except ValueError:
            logger.warning("PayPal webhook rejected: body is not JSON")
            return False

        payload = {
            "auth_algo": headers["paypal-auth-algo"],
            "cert_url": headers["paypal-cert-url"],
            "transmission_id": headers["paypal-transmission-id"],
            "transmission_sig": headers["paypal-transmission-sig"],
            "transmission_time": headers["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        response = self._send("POST", "/v1/notifications/verify-webhook-signature",
                              json=payload, headers=self._bearer())
        if response.status_code != 200:
            logger.error("PayPal verify signature error: %s %s", response.status_code, response.text[:200])
            return False

        status = response.json().get("verification_status")
        if status != "SUCCESS":
            logger.warning("PayPal webhook signature not verified: %s", status)
            return False
        return True

    def parse_notification(self, raw_body):
        try:
            event = json.loads(raw_body)
        except ValueError:
            return None
        if not isinstance(event, dict) or not event.get("event_type"):
            return None

        event_type = event["event_type"]
        resource = event.get("resource") or {}

        if event_type.startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            provider_order_id = related.get("order_id")
            capture_id = resource.get("id")
            order_id = resource.get("custom_id")
        else:
            unit = (resource.get("purchase_units") or [{}])[0]
            captures = _captures_of(resource)
            provider_order_id = resource.get("id")
            capture_id = captures[0].get("id") if captures else None
            order_id = unit.get("custom_id") or unit.get("reference_id")

        return GatewayNotification(
            provider=self.name,
            event_id=event.get("id"),
            event_type=event_type,
            paid=event_type in PAID_EVENTS,
            provider_order_id=provider_order_id,
            capture_id=capture_id,
            order_id=order_id,
            raw=event,
        )

    # --- helpers ---

    def _bearer(self, request_id=None):
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _send(self, method, path, **kwargs):
        try:
            return self.http.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as exc:
            logger.error("PayPal %s %s failed: %s", method, path, exc)
            raise UpstreamError(f"PayPal request failed: {exc}") from exc

    @staticmethod
    def _json_or_raise(response, message):
        if not response.is_success:
            logger.error("%s: %s %s", message, response.status_code, response.text[:500])
            raise UpstreamError(
                f"{message}: {response.status_code}",
                provider_status=response.status_code,
                provider_body=response.text,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"{message}: invalid JSON", provider_status=response.status_code,
                                provider_body=response.text) from exc


def _captures_of(order):
    units = order.get("purchase_units") or []
    if not units:
        return []
    return ((units[0].get("payments") or {}).get("captures")) or []
