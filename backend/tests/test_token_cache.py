"""
Tests for the OAuth token cache.
"""
from storefront.modules.shipping.carriers.token_cache import TokenCache


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestTokenCache:
    """Expiry with safety margin and an injected clock."""

    def test_missing_key(self):
        assert TokenCache().get("dhl") is None

    def test_token_valid_until_margin(self):
        clock = FakeClock()
        cache = TokenCache(margin_seconds=60, clock=clock)
        entry = cache.set("dhl", "tok-1", expires_in=3600)

        assert entry.expires_at == 1000.0 + 3600 - 60
        clock.now += 3539
        assert cache.get("dhl") == "tok-1"

    def test_token_expires_at_margin(self):
        clock = FakeClock()
        cache = TokenCache(margin_seconds=60, clock=clock)
        cache.set("dhl", "tok-1", expires_in=3600)

        clock.now += 3540
        assert cache.get("dhl") is None

    def test_set_replaces_entry(self):
        cache = TokenCache(clock=FakeClock())
        cache.set("ups", "old", 3600)
        cache.set("ups", "new", 3600)
        assert cache.get("ups") == "new"

    def test_invalidate_one_and_all(self):
        cache = TokenCache(clock=FakeClock())
        cache.set("dhl", "a", 3600)
        cache.set("ups", "b", 3600)

        cache.invalidate("dhl")
        assert cache.get("dhl") is None
        assert cache.get("ups") == "b"

        cache.invalidate()
        assert cache.get("ups") is None
