"""Tests for the network statistics service."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from trusted_stake.services.data.response_models import StakingStatsRecord, StatsTimeframe, SubnetSnapshot
from trusted_stake.services.data.trustedstake_client import TrustedStakeAPIError
from trusted_stake.services.network_stats import NetworkStatsService

RAO = 1_000_000_000


def record(netuid, ts, buy=0, sell=0):
    return StakingStatsRecord.model_validate({
        "netUid": netuid,
        "tsStart": ts,
        "tsEnd": ts,
        "buyVolumeTao": str(buy * RAO),
        "sellVolumeTao": str(sell * RAO),
        "totalVolumeTao": str((buy + sell) * RAO),
        "transactions": 2,
    })


@pytest.fixture
def client():
    client = MagicMock()
    client.get_staking_stats = AsyncMock(return_value=[record(1, "2024-01-02", buy=20, sell=10)])
    client.get_subnets = AsyncMock(return_value=[
        SubnetSnapshot(netuid=0, tao_in_pool=300.0),
        SubnetSnapshot(netuid=1, tao_in_pool=100.0, alpha_in_pool=5000.0, emission=1.0),
    ])
    client.get_alpha_prices = AsyncMock(return_value={1: 0.02})
    return client


class TestNetworkStatsService:
    """Test refresh and recompute-on-change."""

    @pytest.mark.asyncio
    async def test_refresh(self, client):
        service = NetworkStatsService(client=client, timeframe=StatsTimeframe.DAILY)

        snapshot = await service.refresh()

        assert snapshot.total_volume == pytest.approx(30.0)
        assert snapshot.buy_sell_ratio == pytest.approx(2.0)
        assert snapshot.root_tao == pytest.approx(300.0)
        assert snapshot.sum_alpha_prices == pytest.approx(0.02)
        assert service.get_snapshot() is snapshot
        client.get_staking_stats.assert_awaited_once_with(StatsTimeframe.DAILY)

    @pytest.mark.asyncio
    async def test_unchanged_inputs_not_recomputed(self, client):
        service = NetworkStatsService(client=client, timeframe="daily")

        first = await service.refresh()
        second = await service.refresh()

        assert second is first
        assert service.recomputations == 1

    @pytest.mark.asyncio
    async def test_changed_inputs_recomputed(self, client):
        service = NetworkStatsService(client=client, timeframe="daily")
        await service.refresh()

        client.get_alpha_prices.return_value = {1: 0.05}
        snapshot = await service.refresh()

        assert service.recomputations == 2
        assert snapshot.sum_alpha_prices == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_timeframe_change_recomputed(self, client):
        service = NetworkStatsService(client=client, timeframe="daily")
        await service.refresh()

        service.set_timeframe("weekly")
        await service.refresh()

        assert service.recomputations == 2
        assert service.state.timeframe == StatsTimeframe.WEEKLY

    @pytest.mark.asyncio
    async def test_fetch_error_keeps_previous_state(self, client):
        service = NetworkStatsService(client=client, timeframe="daily")
        first = await service.refresh()

        client.get_subnets.side_effect = TrustedStakeAPIError("down", status_code=502)
        with pytest.raises(TrustedStakeAPIError):
            await service.refresh()

        assert service.get_snapshot() is first

    @pytest.mark.asyncio
    async def test_subnet_metrics(self, client):
        service = NetworkStatsService(client=client, timeframe="daily")
        assert service.get_subnet_metrics(1) is None

        await service.refresh()
        metrics = service.get_subnet_metrics(1)

        assert metrics.netuid == 1
        assert metrics.alpha_price == 0.02
        assert metrics.total_volume == pytest.approx(30.0)
        assert metrics.emission_rank == 1
        assert service.get_subnet_metrics(99) is None

    def test_default_timeframe_from_settings(self, client):
        assert NetworkStatsService(client=client).timeframe == StatsTimeframe.DAILY
