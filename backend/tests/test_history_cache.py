"""Tests for the rolling window price cache."""

import threading

import pytest

from market_stream.storage import PriceHistoryCache


class TestPriceHistoryCache:
    """Tests for PriceHistoryCache."""

    def test_record_returns_length(self):
        cache = PriceHistoryCache(capacity=5)

        assert cache.record("BTCUSDT", 1.0) == 1
        assert cache.record("BTCUSDT", 2.0) == 2
        assert cache.get("BTCUSDT") == [1.0, 2.0]

    def test_unknown_symbol_is_empty(self):
        assert PriceHistoryCache().get("NOPE") == []

    def test_capacity_never_exceeded(self):
        cache = PriceHistoryCache(capacity=3)

        for i in range(10):
            length = cache.record("BTCUSDT", float(i))
            assert length <= 3
            assert len(cache.get("BTCUSDT")) <= 3

    def test_oldest_evicted_first(self):
        cache = PriceHistoryCache(capacity=3)
        for price in (1.0, 2.0, 3.0):
            cache.record("BTCUSDT", price)

        cache.record("BTCUSDT", 4.0)

        assert cache.get("BTCUSDT") == [2.0, 3.0, 4.0]

    def test_same_open_time_replaces_last(self):
        cache = PriceHistoryCache(capacity=5)
        cache.record("BTCUSDT", 1.0, open_time=0)
        cache.record("BTCUSDT", 2.0, open_time=60_000)

        assert cache.record("BTCUSDT", 2.5, open_time=60_000) == 2
        assert cache.get("BTCUSDT") == [1.0, 2.5]

    def test_older_open_time_ignored(self):
        cache = PriceHistoryCache(capacity=5)
        cache.record("BTCUSDT", 1.0, open_time=60_000)

        assert cache.record("BTCUSDT", 0.5, open_time=0) is None
        assert cache.get("BTCUSDT") == [1.0]

    def test_symbols_are_independent(self):
        cache = PriceHistoryCache(capacity=2)
        cache.record("BTCUSDT", 1.0)
        cache.record("ETHUSDT", 10.0)
        cache.record("ETHUSDT", 11.0)
        cache.record("ETHUSDT", 12.0)

        assert cache.get("BTCUSDT") == [1.0]
        assert cache.get("ETHUSDT") == [11.0, 12.0]
        assert sorted(cache.symbols()) == ["BTCUSDT", "ETHUSDT"]

    def test_seed_keeps_tail(self):
        cache = PriceHistoryCache(capacity=3)

        assert cache.seed("BTCUSDT", [1.0, 2.0, 3.0, 4.0, 5.0], last_open_time=240_000) == 3
        assert cache.get("BTCUSDT") == [3.0, 4.0, 5.0]
        # Seeded open time is honoured for duplicates
        cache.record("BTCUSDT", 5.5, open_time=240_000)
        assert cache.get("BTCUSDT") == [3.0, 4.0, 5.5]

    def test_seed_empty(self):
        cache = PriceHistoryCache()
        cache.seed("BTCUSDT", [])

        assert cache.get("BTCUSDT") == []
        assert cache.length("BTCUSDT") == 0
        assert len(cache) == 1

    def test_get_returns_copy(self):
        cache = PriceHistoryCache()
        cache.record("BTCUSDT", 1.0)
        cache.get("BTCUSDT").append(99.0)

        assert cache.get("BTCUSDT") == [1.0]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            PriceHistoryCache(capacity=0)

    def test_concurrent_writers_same_symbol(self):
        """No lost updates when several threads write the same symbol."""
        cache = PriceHistoryCache(capacity=10_000)

        def writer():
            for i in range(1000):
                cache.record("BTCUSDT", float(i))

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cache.length("BTCUSDT") == 4000

    def test_concurrent_writers_capacity(self):
        cache = PriceHistoryCache(capacity=100)

        def writer(symbol):
            for i in range(2000):
                cache.record(symbol, float(i))

        threads = [threading.Thread(target=writer, args=(s,)) for s in ("A", "A", "B")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cache.length("A") == 100
        assert cache.get("B") == [float(i) for i in range(1900, 2000)]
