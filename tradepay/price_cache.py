"""In-memory LRU + TTL cache for price-advice lookups."""
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict

logger = logging.getLogger(__name__)

# bump when the advice logic changes so old entries stop matching
KEY_VERSION = 1


def _text(value):
    return "" if value is None else str(value).strip()


def _number(value):
    if value is None or value == "":
        return ""
    try:
        return float(value)
    except (TypeError, ValueError):
        return _text(value)


def normalize_price_advice_payload(body=None):
    body = body or {}
    return {
        "title": " ".join(_text(body.get("title")).lower().split()),
        "category": _text(body.get("category")).lower(),
        "brand": _text(body.get("brand")).lower(),
        "condition": _text(body.get("condition")).lower(),
        "location": _text(body.get("location")).lower(),
        "currency": _text(body.get("currency") or "THB").upper(),
        "price": _number(body.get("price")),
        "min_price": _number(body.get("min_price")),
        "max_price": _number(body.get("max_price")),
        "description": " ".join(_text(body.get("description")).lower().split()),
    }


def make_price_advice_cache_key(payload, user_id=""):
    raw = json.dumps(
        {"v": KEY_VERSION, "user_id": user_id or "", "payload": normalize_price_advice_payload(payload)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class PriceAdviceCache:
    """Thread-safe cache bounded by entry count.

    ``ttl=None`` on put uses the default TTL; ``ttl <= 0`` means do not cache.
    """

    def __init__(self, max_size=500, default_ttl=3600):
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._entries = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def __len__(self):
        return len(self._entries)

    def get(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            value, expires_at = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key, value, ttl=None):
        if ttl is not None and ttl <= 0:
            return

        ttl = self.default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl is not None else None

        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            elif len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                logger.debug("price-advice cache evicted %s", evicted)
            self._entries[key] = (value, expires_at)

    def invalidate(self, key):
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def get_or_compute(self, payload, compute, user_id="", ttl=None):
        key = make_price_advice_cache_key(payload, user_id=user_id)
        cached = self.get(key)
        if cached is not None:
            return cached

        value = compute(normalize_price_advice_payload(payload))
        self.put(key, value, ttl=ttl)
        return value
