from dataclasses import dataclass, field
from typing import Optional


@dataclass
class GatewayIntent:
    provider: str
    provider_order_id: str
    approve_url: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass
class GatewayCapture:
    provider_order_id: str
    capture_id: Optional[str]
    completed: bool
    status: str = ""


@dataclass
class GatewayNotification:
    provider: str
    event_id: Optional[str]
    event_type: str
    paid: bool
    provider_order_id: Optional[str] = None
    capture_id: Optional[str] = None
    order_id: Optional[str] = None
    raw: dict = field(default_factory=dict)

    def as_payload(self):
        return {
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "provider_order_id": self.provider_order_id,
            "capture_id": self.capture_id,
        }


class PaymentGateway:
    """Adapter over one external payment provider."""

    name = "gateway"

    def create_intent(self, amount, currency, order_id, description) -> GatewayIntent:
        raise NotImplementedError

    def capture(self, provider_order_id) -> GatewayCapture:
        raise NotImplementedError

    def refund(self, provider_order_id, capture_id=None):
        raise NotImplementedError

    def verify_notification(self, headers, raw_body) -> bool:
        raise NotImplementedError

    def parse_notification(self, raw_body) -> Optional[GatewayNotification]:
        raise NotImplementedError


def lower_headers(headers):
    return {str(k).lower(): v for k, v in (headers or {}).items()}
