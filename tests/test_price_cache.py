import pytest

from tradepay.price_cache import PriceAdviceCache, make_price_advice_cache_key, normalize_price_advice_payload


@pytest.fixture
def clock(mocker):
    fake = mocker.patch("tradepay.price_cache.time")
    fake.monotonic.return_value = 1000.0
    return fake


def test_normalization_ignores_case_and_spacing():
    payload = normalize_price_advice_payload({"title": "  Film   CAMERA ", "price": "1500", "currency": "thb"})

    assert payload["title"] == "film camera"
    assert payload["price"] == 1500.0
    assert payload["currency"] == "THB"
    assert payload["brand"] == ""


def test_equivalent_payloads_share_a_key():
    a = make_price_advice_cache_key({"title": "Film Camera", "price": 1500})
    b = make_price_advice_cache_key({"title": " film  camera", "price": "1500.0"})
    assert a == b
    assert a != make_price_advice_cache_key({"title": "Film Camera", "price": 1500}, user_id="u1")
    assert a != make_price_advice_cache_key({"title": "Film Camera", "price": 1600})


def test_get_and_put(clock):
    cache = PriceAdviceCache()
    assert cache.get("k") is None
    cache.put("k", {"suggested": 1200})
    assert cache.get("k") == {"suggested": 1200}
    assert (cache.hits, cache.misses) == (1, 1)


def test_entries_expire(clock):
    cache = PriceAdviceCache(default_ttl=60)
    cache.put("short", "a", ttl=10)
    cache.put("default", "b")

    clock.monotonic.return_value = 1010.0
    assert cache.get("short") is None
    assert cache.get("default") == "b"

    clock.monotonic.return_value = 1060.0
    assert cache.get("default") is None
    assert len(cache) == 0


def test_non_positive_ttl_is_not_cached(clock):
    cache = PriceAdviceCache()
    cache.put("k", "v", ttl=0)
    cache.put("j", "v", ttl=-5)
    assert len(cache) == 0


def test_least_recently_used_is_evicted(clock):
    cache = PriceAdviceCache(max_size=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.get("a")
    cache.put("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.evictions == 1


def test_overwrite_does_not_evict(clock):
    cache = PriceAdviceCache(max_size=2)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.put("a", 10)

    assert cache.evictions == 0
    assert cache.get("a") == 10
    assert cache.get("b") == 2


def test_invalidate_and_clear(clock):
    cache = PriceAdviceCache()
    cache.put("a", 1)
    cache.put("b", 2)

    assert cache.invalidate("a")
    assert not cache.invalidate("a")
    cache.clear()
    assert len(cache) == 0


def test_get_or_compute_calls_once(clock, mocker):
    cache = PriceAdviceCache()
    compute = mocker.Mock(return_value={"suggested": 990})

    first = cache.get_or_compute({"title": "Lamp"}, compute, user_id="u1")
    second = cache.get_or_compute({"title": " LAMP "}, compute, user_id="u1")

    assert first == second == {"suggested": 990}
    compute.assert_called_once()
    assert compute.call_args.args[0]["title"] == "lamp"
