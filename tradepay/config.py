import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

PAYPAL_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


def _env_float(name, default):
    return float(os.getenv(name) or default)


def _env_int(name, default):
    return int(os.getenv(name) or default)


@dataclass
class Settings:
    trading_database_url: str = "sqlite:///./trading.db"
    token_database_url: str = "sqlite:///./token.db"
    user_database_url: str = "sqlite:///./user.db"

    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_base_url: str = PAYPAL_BASE_URLS["sandbox"]
    paypal_webhook_id: str = ""
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    client_base_url: str = "http://localhost:5173"
    http_timeout: float = 10.0

    upload_dir: Path = field(default_factory=lambda: BASE_DIR / "uploads")
    slip_max_bytes: int = 6 * 1024 * 1024

    currency: str = "THB"
    token_symbol: str = "BROC"
    token_reward_buyer_rate: float = 0.0
    token_reward_seller_rate: float = 0.0
    token_reward_min: int = 10

    price_advice_cache_max: int = 500
    price_advice_cache_ttl: int = 3600

    log_level: str = "INFO"

    @property
    def database_urls(self):
        return {
            "trading": self.trading_database_url,
            "token": self.token_database_url,
            "user": self.user_database_url,
        }

    @classmethod
    def from_env(cls):
        load_dotenv(dotenv_path=ENV_PATH)

        mode = os.getenv("PAYPAL_MODE", "sandbox").lower()
        paypal_base = os.getenv("PAYPAL_BASE_URL") or PAYPAL_BASE_URLS.get(
            mode, PAYPAL_BASE_URLS["sandbox"]
        )

        return cls(
            trading_database_url=os.getenv("TRADING_DATABASE_URL", cls.trading_database_url),
            token_database_url=os.getenv("TOKEN_DATABASE_URL", cls.token_database_url),
            user_database_url=os.getenv("USER_DATABASE_URL", cls.user_database_url),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            paypal_client_id=os.getenv("PAYPAL_CLIENT_ID", ""),
            # older deployments used PAYPAL_SECRET
            paypal_client_secret=os.getenv("PAYPAL_CLIENT_SECRET") or os.getenv("PAYPAL_SECRET", ""),
            paypal_base_url=paypal_base,
            paypal_webhook_id=os.getenv("PAYPAL_WEBHOOK_ID", ""),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            client_base_url=os.getenv("CLIENT_BASE_URL", cls.client_base_url),
            http_timeout=_env_float("HTTP_TIMEOUT", cls.http_timeout),
            upload_dir=Path(os.getenv("UPLOAD_DIR") or BASE_DIR / "uploads"),
            slip_max_bytes=_env_int("SLIP_MAX_BYTES", cls.slip_max_bytes),
            currency=os.getenv("CURRENCY", cls.currency),
            token_symbol=os.getenv("TOKEN_SYMBOL", cls.token_symbol),
            token_reward_buyer_rate=_env_float("TOKEN_REWARD_BUYER_RATE", 0.0),
            token_reward_seller_rate=_env_float("TOKEN_REWARD_SELLER_RATE", 0.0),
            token_reward_min=_env_int("TOKEN_REWARD_MIN", cls.token_reward_min),
            price_advice_cache_max=_env_int("PRICE_ADVICE_CACHE_MAX", cls.price_advice_cache_max),
            price_advice_cache_ttl=_env_int("PRICE_ADVICE_CACHE_TTL", cls.price_advice_cache_ttl),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
