"""Network and subnet trading metrics.

Folds staking-stats buckets (temporal or block based) and subnet pool
snapshots into dashboard metrics. Everything here is a pure function over
its inputs; fetching is done by NetworkStatsService.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from trusted_stake.services.data.response_models import (
    StakingStatsRecord,
    SubnetSnapshot,
    parse_api_timestamp,
)

ROOT_NETUID = 0
MIN_ALPHA_IN_POOL_FOR_PRICE_SUM = 2000


@dataclass(frozen=True)
class NetworkMetricsSnapshot:
    total_volume: float = 0.0
    total_transactions: int = 0
    total_buy_volume: float = 0.0
    total_sell_volume: float = 0.0
    buy_sell_ratio: float = 0.0
    total_tao_in_pools: float = 0.0
    root_tao: float = 0.0
    total_tao_in_network: float = 0.0
    tao_in_subnets_percentage: float = 0.0
    tao_on_root_percentage: float = 0.0
    total_staked_alpha: float = 0.0
    root_emission: float = 0.0
    sum_alpha_prices: float = 0.0
    subnet_count: int = 0


@dataclass(frozen=True)
class SubnetMetrics:
    netuid: int
    alpha_price: float
    tao_in_pool: float
    alpha_in_pool: float
    alpha_staked: float
    utilization: float
    alpha_distribution_ratio: float
    market_cap: float
    alpha_supply: float
    emission: float
    emission_percentage: float
    emission_rank: int
    total_transactions: int
    total_volume: float
    buy_sell_ratio: float
    unique_buyers: int
    unique_sellers: int
    unique_traders: int


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def _end_time(record: StakingStatsRecord) -> Optional[datetime]:
    try:
        return parse_api_timestamp(record.ts_end)
    except ValueError:
        return None


def _is_newer(candidate: StakingStatsRecord, current: StakingStatsRecord) -> bool:
    """Strict recency comparison; anything not comparable keeps ``current``."""
    if candidate.is_block_record or current.is_block_record:
        if candidate.block_start is None or current.block_start is None:
            return False
        return candidate.block_start > current.block_start

    candidate_end = _end_time(candidate)
    current_end = _end_time(current)
    if candidate_end is None or current_end is None:
        return False
    return candidate_end > current_end


def latest_per_subnet(records: Iterable[StakingStatsRecord]) -> Dict[int, StakingStatsRecord]:
    """Keep the most recent stats record for each subnet."""
    latest: Dict[int, StakingStatsRecord] = {}
    for record in records:
        current = latest.get(record.net_uid)
        if current is None or _is_newer(record, current):
            latest[record.net_uid] = record
    return latest


def _find_subnet(subnets: Iterable[SubnetSnapshot], netuid: int) -> Optional[SubnetSnapshot]:
    for subnet in subnets:
        if subnet.netuid == netuid:
            return subnet
    return None


def sum_alpha_prices(subnets: Iterable[SubnetSnapshot], alpha_prices: Mapping[int, float]) -> float:
    """Sum of alpha prices over non-root subnets with a meaningful pool."""
    return sum(
        alpha_prices.get(s.netuid, 0.0)
        for s in subnets
        if s.netuid != ROOT_NETUID and s.alpha_in_pool >= MIN_ALPHA_IN_POOL_FOR_PRICE_SUM
    )


def summarize(
    records: Iterable[StakingStatsRecord],
    subnets: Iterable[SubnetSnapshot],
    alpha_prices: Optional[Mapping[int, float]] = None,
) -> NetworkMetricsSnapshot:
    """Network-wide metrics from stats records and subnet snapshots.

    Args:
        records: Stats records, any order, possibly several per subnet
        subnets: Current subnet pool snapshots (TAO units)
        alpha_prices: Latest alpha price per netuid, for sum_alpha_prices

    Returns:
        NetworkMetricsSnapshot
    """
    subnets = list(subnets)
    latest = list(latest_per_subnet(records).values())

    total_volume = sum(r.total_volume for r in latest)
    total_transactions = sum(r.transactions for r in latest)
    total_buy_volume = sum(r.buy_volume for r in latest)
    total_sell_volume = sum(r.sell_volume for r in latest)

    total_tao_in_pools = sum(s.tao_in_pool for s in subnets if s.netuid != ROOT_NETUID)
    root = _find_subnet(subnets, ROOT_NETUID)
    root_tao = root.tao_in_pool if root else 0.0
    total_tao_in_network = total_tao_in_pools + root_tao

    return NetworkMetricsSnapshot(
        total_volume=total_volume,
        total_transactions=total_transactions,
        total_buy_volume=total_buy_volume,
        total_sell_volume=total_sell_volume,
        buy_sell_ratio=_ratio(total_buy_volume, total_sell_volume),
        total_tao_in_pools=total_tao_in_pools,
        root_tao=root_tao,
        total_tao_in_network=total_tao_in_network,
        tao_in_subnets_percentage=_ratio(total_tao_in_pools, total_tao_in_network) * 100,
        tao_on_root_percentage=_ratio(root_tao, total_tao_in_network) * 100,
        total_staked_alpha=sum(s.alpha_staked for s in subnets),
        root_emission=root.emission if root else 0.0,
        sum_alpha_prices=sum_alpha_prices(subnets, alpha_prices or {}),
        subnet_count=len(latest),
    )


def emission_rank(subnets: Iterable[SubnetSnapshot], netuid: int) -> int:
    """1-based rank by emission among non-root subnets (0 if not ranked)."""
    ranked = sorted(
        (s for s in subnets if s.netuid != ROOT_NETUID),
        key=lambda s: (-s.emission, s.netuid),
    )
    for position, subnet in enumerate(ranked, start=1):
        if subnet.netuid == netuid:
            return position
    return 0


def subnet_metrics(
    netuid: int,
    records: Iterable[StakingStatsRecord],
    subnets: Iterable[SubnetSnapshot],
    alpha_prices: Optional[Mapping[int, float]] = None,
) -> Optional[SubnetMetrics]:
    """Detail metrics for one subnet, or None if the subnet is unknown."""
    subnets = list(subnets)
    subnet = _find_subnet(subnets, netuid)
    if subnet is None:
        return None

    alpha_prices = alpha_prices or {}
    stats = latest_per_subnet(r for r in records if r.net_uid == netuid).get(netuid)

    buy_volume = stats.buy_volume if stats else 0.0
    sell_volume = stats.sell_volume if stats else 0.0
    alpha_price = alpha_prices.get(netuid, 0.0)
    total_emission = sum(s.emission for s in subnets if s.netuid != ROOT_NETUID)

    return SubnetMetrics(
        netuid=netuid,
        alpha_price=alpha_price,
        tao_in_pool=subnet.tao_in_pool,
        alpha_in_pool=subnet.alpha_in_pool,
        alpha_staked=subnet.alpha_staked,
        utilization=_ratio(subnet.alpha_staked, subnet.alpha_staked + subnet.alpha_in_pool) * 100,
        alpha_distribution_ratio=_ratio(subnet.alpha_staked, subnet.alpha_in_pool),
        market_cap=subnet.alpha_staked * alpha_price,
        alpha_supply=subnet.alpha_in_pool + subnet.alpha_staked,
        emission=subnet.emission,
        emission_percentage=_ratio(subnet.emission, total_emission) * 100,
        emission_rank=emission_rank(subnets, netuid),
        total_transactions=(stats.buys + stats.sells) if stats else 0,
        total_volume=buy_volume + sell_volume,
        buy_sell_ratio=_ratio(buy_volume, sell_volume),
        unique_buyers=stats.buyers if stats else 0,
        unique_sellers=stats.sellers if stats else 0,
        unique_traders=stats.traders if stats else 0,
    )

