"""Network statistics refresh.

Fetches staking stats, subnet pools and alpha prices, then folds them into
a NetworkMetricsSnapshot. The snapshot is recomputed only when one of the
inputs changed since the previous refresh.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import structlog

from trusted_stake.core.config import get_settings
from trusted_stake.services.analysis.stats import (
    NetworkMetricsSnapshot,
    SubnetMetrics,
    subnet_metrics,
    summarize,
)
from trusted_stake.services.data.response_models import StakingStatsRecord, StatsTimeframe, SubnetSnapshot
from trusted_stake.services.data.trustedstake_client import TrustedStakeClient, get_trustedstake_client

logger = structlog.get_logger()


@dataclass
class NetworkStatsState:
    """Inputs and result of the last refresh."""
    timeframe: StatsTimeframe
    records: List[StakingStatsRecord] = field(default_factory=list)
    subnets: List[SubnetSnapshot] = field(default_factory=list)
    alpha_prices: Dict[int, float] = field(default_factory=dict)
    snapshot: NetworkMetricsSnapshot = field(default_factory=NetworkMetricsSnapshot)
    updated_at: Optional[datetime] = None


class NetworkStatsService:
    """Keeps the latest network metrics for one stats timeframe."""

    def __init__(
        self,
        client: Optional[TrustedStakeClient] = None,
        timeframe: Optional[StatsTimeframe] = None,
    ):
        self._client = client
        self.timeframe = StatsTimeframe(timeframe or get_settings().stats_timeframe)
        self.state: Optional[NetworkStatsState] = None
        self.recomputations = 0

    @property
    def client(self) -> TrustedStakeClient:
        if self._client is None:
            self._client = get_trustedstake_client()
        return self._client

    async def _fetch(self) -> Tuple[List[StakingStatsRecord], List[SubnetSnapshot], Dict[int, float]]:
        return await asyncio.gather(
            self.client.get_staking_stats(self.timeframe),
            self.client.get_subnets(),
            self.client.get_alpha_prices(),
        )

    def _unchanged(self, records, subnets, alpha_prices) -> bool:
        state = self.state
        return (
            state is not None
            and state.timeframe == self.timeframe
            and state.records == records
            and state.subnets == subnets
            and state.alpha_prices == alpha_prices
        )

    async def refresh(self) -> NetworkMetricsSnapshot:
        """Fetch inputs and return the current snapshot.

        Raises:
            TrustedStakeAPIError: If any input cannot be fetched; the previous
                state is kept.
        """
        records, subnets, alpha_prices = await self._fetch()

        if self._unchanged(records, subnets, alpha_prices):
            logger.debug("Network stats unchanged", timeframe=self.timeframe.value)
            return self.state.snapshot

        snapshot = summarize(records, subnets, alpha_prices)
        self.recomputations += 1
        self.state = NetworkStatsState(
            timeframe=self.timeframe,
            records=records,
            subnets=subnets,
            alpha_prices=alpha_prices,
            snapshot=snapshot,
            updated_at=datetime.now(timezone.utc),
        )
        logger.info(
            "Network stats refreshed",
            timeframe=self.timeframe.value,
            subnets=snapshot.subnet_count,
            total_volume=snapshot.total_volume,
            total_transactions=snapshot.total_transactions,
        )
        return snapshot

    def set_timeframe(self, timeframe: StatsTimeframe) -> None:
        self.timeframe = StatsTimeframe(timeframe)

    def get_snapshot(self) -> Optional[NetworkMetricsSnapshot]:
        return self.state.snapshot if self.state else None

    def get_subnet_metrics(self, netuid: int) -> Optional[SubnetMetrics]:
        """Detail metrics for one subnet from the last refresh."""
        if self.state is None:
            return None
        return subnet_metrics(netuid, self.state.records, self.state.subnets, self.state.alpha_prices)


# Lazy singleton instance
_network_stats_service: Optional[NetworkStatsService] = None


def get_network_stats_service() -> NetworkStatsService:
    """Get or create the network stats service singleton."""
    global _network_stats_service
    if _network_stats_service is None:
        _network_stats_service = NetworkStatsService()
    return _network_stats_service
