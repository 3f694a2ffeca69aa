"""Tests for the average-price PnL engine."""

import pickle
from concurrent.futures import ThreadPoolExecutor

import pytest

from trusted_stake.services.analysis.pnl import (
    PnLCache,
    PnLEngine,
    PnLResult,
    PositionSnapshot,
    TradeRecord,
    build_request,
    compute_pnl,
    handle_request,
    transaction_fingerprint,
)
from trusted_stake.services.data.response_models import StakingTransaction


def stake(netuid, tao, alpha):
    return TradeRecord(netuid, "STAKING", tao, alpha)


def unstake(netuid, tao, alpha):
    return TradeRecord(netuid, "UNSTAKING", tao, alpha)


class TestComputePnL:
    """Test per-subnet average price PnL."""

    def test_single_buy_marked_to_market(self):
        """avg 100/50 = 2.0; unrealized 50*2.5 - 50*2.0 = 25."""
        results = compute_pnl(
            [stake(1, 100.0, 50.0)],
            [PositionSnapshot(1, 50.0, 2.5)],
        )

        assert results == {1: PnLResult(
            avg_buy_price=2.0,
            realized_pnl=0.0,
            unrealized_pnl=25.0,
            total_pnl=25.0,
        )}

    def test_api_transactions(self):
        """StakingTransaction amounts are converted from rao."""
        tx = StakingTransaction(
            coldkey="ck",
            hotkey="hk",
            net_uid=1,
            tao="100000000000",
            alpha="50000000000",
            action="STAKING",
        )
        results = compute_pnl([tx], [PositionSnapshot(1, 50.0, 2.5)])

        assert results[1].avg_buy_price == pytest.approx(2.0)
        assert results[1].total_pnl == pytest.approx(25.0)

    def test_realized_and_unrealized(self):
        results = compute_pnl(
            [stake(1, 100.0, 50.0), unstake(1, 60.0, 20.0)],
            [PositionSnapshot(1, 30.0, 3.0)],
        )

        result = results[1]
        assert result.avg_buy_price == pytest.approx(2.0)
        # sold 60 TAO at 3.0: 180 - 60 * 2.0
        assert result.realized_pnl == pytest.approx(60.0)
        assert result.unrealized_pnl == pytest.approx(30.0)
        assert result.total_pnl == pytest.approx(90.0)

    def test_weighted_average_buy_price(self):
        results = compute_pnl(
            [stake(2, 10.0, 10.0), stake(2, 30.0, 10.0)],
            [],
        )
        # values 10*1 + 30*3 = 100 over 40 TAO
        assert results[2].avg_buy_price == pytest.approx(2.5)

    def test_root_excluded(self):
        results = compute_pnl(
            [stake(0, 100.0, 100.0), stake(3, 10.0, 5.0)],
            [PositionSnapshot(0, 100.0, 1.0), PositionSnapshot(3, 5.0, 2.0)],
        )
        assert 0 not in results
        assert 3 in results

    def test_only_root_gives_empty_map(self):
        assert compute_pnl([stake(0, 1.0, 1.0)], [PositionSnapshot(0, 1.0, 1.0)]) == {}

    def test_subnet_without_buys_omitted(self):
        results = compute_pnl([unstake(4, 10.0, 5.0)], [PositionSnapshot(4, 5.0, 2.0)])
        assert results == {}

    def test_zero_alpha_trade_ignored(self):
        results = compute_pnl(
            [stake(5, 100.0, 50.0), stake(5, 10.0, 0.0)],
            [PositionSnapshot(5, 50.0, 2.0)],
        )
        assert results[5].avg_buy_price == pytest.approx(2.0)

    def test_zero_alpha_trade_keeps_results_finite(self):
        results = compute_pnl(
            [stake(5, 100.0, 0.0), stake(5, 100.0, 50.0), unstake(5, 30.0, 0.0)],
            [PositionSnapshot(5, 50.0, 2.5)],
        )

        assert results == {5: PnLResult(
            avg_buy_price=2.0,
            realized_pnl=0.0,
            unrealized_pnl=25.0,
            total_pnl=25.0,
        )}

    def test_only_zero_alpha_trades_omitted(self):
        results = compute_pnl(
            [stake(5, 100.0, 0.0), unstake(5, 10.0, 0.0)],
            [PositionSnapshot(5, 50.0, 2.5)],
        )
        assert results == {}

    def test_no_current_position(self):
        """A fully exited subnet keeps its realized PnL."""
        results = compute_pnl([stake(6, 100.0, 50.0), unstake(6, 150.0, 50.0)], [])

        assert results[6].unrealized_pnl == 0.0
        # sold 150 TAO at 3.0: 450 - 150 * 2.0
        assert results[6].realized_pnl == pytest.approx(150.0)

    def test_positions_on_several_hotkeys_combined(self):
        results = compute_pnl(
            [stake(7, 100.0, 50.0)],
            [PositionSnapshot(7, 20.0, 2.5), PositionSnapshot(7, 30.0, 2.5)],
        )
        assert results[7].unrealized_pnl == pytest.approx(25.0)

    def test_non_finite_dropped(self):
        results = compute_pnl(
            [stake(8, 100.0, 50.0), stake(9, 100.0, 50.0)],
            [PositionSnapshot(8, 50.0, float("inf")), PositionSnapshot(9, 50.0, 2.0)],
        )
        assert 8 not in results
        assert 9 in results

    def test_idempotent(self):
        trades = [stake(1, 100.0, 50.0), unstake(1, 10.0, 4.0)]
        positions = [PositionSnapshot(1, 46.0, 2.2)]
        assert compute_pnl(trades, positions) == compute_pnl(trades, positions)


class TestMessages:
    """Request/response messages crossing the worker boundary."""

    def test_request_and_response_pickle(self):
        request = build_request([stake(1, 100.0, 50.0)], [PositionSnapshot(1, 50.0, 2.5)])
        restored = pickle.loads(pickle.dumps(request))
        assert restored == request

        response = handle_request(restored)
        assert pickle.loads(pickle.dumps(response)) == response
        assert response.to_results()[1].total_pnl == 25.0

    def test_fingerprint_deterministic(self):
        batch = [stake(1, 100.0, 50.0), unstake(2, 5.0, 1.0)]
        assert transaction_fingerprint(batch) == transaction_fingerprint(list(batch))
        assert len(transaction_fingerprint(batch)) == 64

    def test_fingerprint_changes_with_batch(self):
        batch = [stake(1, 100.0, 50.0)]
        assert transaction_fingerprint(batch) != transaction_fingerprint(batch + [stake(1, 1.0, 1.0)])


class TestPnLCache:
    """Test the LRU result cache."""

    def test_hit_and_miss_counters(self):
        cache = PnLCache(max_entries=2)
        assert cache.get("a") is None
        cache.put("a", {})
        assert cache.get("a") == {}
        assert cache.hits == 1
        assert cache.misses == 1

    def test_evicts_least_recently_used(self):
        cache = PnLCache(max_entries=2)
        cache.put("a", {1: None})
        cache.put("b", {2: None})
        cache.get("a")
        cache.put("c", {3: None})

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_clear(self):
        cache = PnLCache(max_entries=2)
        cache.put("a", {})
        cache.clear()
        assert len(cache) == 0


class TestPnLEngine:
    """Test memoized computation through the engine."""

    @pytest.mark.asyncio
    async def test_second_call_is_cache_hit(self):
        engine = PnLEngine(cache=PnLCache(4), mode="inline")
        trades = [stake(1, 100.0, 50.0)]
        positions = [PositionSnapshot(1, 50.0, 2.5)]

        first = await engine.compute(trades, positions)
        second = await engine.compute(trades, positions)

        assert first == second
        assert engine.cache.hits == 1
        assert engine.cache.misses == 1

    @pytest.mark.asyncio
    async def test_changed_positions_recompute(self):
        engine = PnLEngine(cache=PnLCache(4), mode="inline")
        trades = [stake(1, 100.0, 50.0)]

        first = await engine.compute(trades, [PositionSnapshot(1, 50.0, 2.5)])
        second = await engine.compute(trades, [PositionSnapshot(1, 50.0, 3.0)])

        assert first[1].unrealized_pnl == pytest.approx(25.0)
        assert second[1].unrealized_pnl == pytest.approx(50.0)
        assert engine.cache.misses == 2

    @pytest.mark.asyncio
    async def test_returned_map_is_a_copy(self):
        engine = PnLEngine(cache=PnLCache(4), mode="inline")
        trades = [stake(1, 100.0, 50.0)]

        first = await engine.compute(trades, [])
        first.clear()
        second = await engine.compute(trades, [])
        assert 1 in second

    @pytest.mark.asyncio
    async def test_runs_in_executor(self):
        trades = [stake(1, 100.0, 50.0), stake(2, 10.0, 10.0)]
        positions = [PositionSnapshot(1, 50.0, 2.5), PositionSnapshot(2, 10.0, 0.5)]

        with ThreadPoolExecutor(max_workers=1) as executor:
            engine = PnLEngine(executor=executor, cache=PnLCache(4))
            results = await engine.compute(trades, positions)

        assert results == compute_pnl(trades, positions)

    @pytest.mark.asyncio
    async def test_process_pool_matches_inline(self):
        """Requests and responses survive the trip through a worker process."""
        trades = [stake(1, 100.0, 50.0), unstake(1, 60.0, 20.0), stake(2, 10.0, 10.0)]
        positions = [PositionSnapshot(1, 30.0, 3.0), PositionSnapshot(2, 10.0, 0.5)]

        engine = PnLEngine(cache=PnLCache(4), mode="process")
        try:
            results = await engine.compute(trades, positions)
            assert engine._owns_executor
        finally:
            engine.shutdown()

        assert results == compute_pnl(trades, positions)
        assert results[1].realized_pnl == pytest.approx(60.0)
        assert engine._executor is None
        assert not engine._owns_executor

    def test_shutdown_leaves_injected_executor(self):
        executor = ThreadPoolExecutor(max_workers=1)
        engine = PnLEngine(executor=executor)
        engine.shutdown()
        assert executor.submit(lambda: 1).result() == 1
        executor.shutdown()

    def test_cache_size_from_settings(self):
        engine = PnLEngine(mode="inline")
        assert engine.cache.max_entries == 128
