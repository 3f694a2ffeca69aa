"""Stake balance aggregation.

Turns the raw Subtensor reads for one coldkey into real alpha/TAO balances
per (hotkey, subnet) position plus portfolio totals.

A position's alpha is its share of the hotkey's alpha pool:

    alpha = alpha_share * total_hotkey_alpha / total_hotkey_shares / UNIT

and its TAO value is alpha marked at the subnet pool price
(subnet_tao / subnet_alpha_in; fixed at 1 on root).
"""

import asyncio
import math
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Optional, Tuple

import structlog

from trusted_stake.core.config import get_settings
from trusted_stake.services.chain.fixed_point import decode_fixed_u128
from trusted_stake.services.chain.reader import ChainReader, ChainReadError

logger = structlog.get_logger()

UNIT = 1_000_000_000  # rao per TAO
ROOT_NETUID = 0


def subnet_price(netuid: int, tao_in_pool: float, alpha_in_pool: float) -> float:
    """Alpha price in TAO; root is pegged at 1, an empty pool prices at 0."""
    if netuid == ROOT_NETUID:
        return 1.0
    if alpha_in_pool <= 0:
        return 0.0
    return tao_in_pool / alpha_in_pool


@dataclass(frozen=True)
class StakePosition:
    """One coldkey's stake on one hotkey in one subnet."""
    coldkey: str
    hotkey: str
    netuid: int
    alpha_share: float
    total_hotkey_alpha: int
    total_hotkey_shares: float
    subnet_tao_in_pool: int
    subnet_alpha_in_pool: int

    @property
    def is_root(self) -> bool:
        return self.netuid == ROOT_NETUID

    @property
    def alpha_balance(self) -> float:
        if self.total_hotkey_shares <= 0:
            return 0.0
        return self.alpha_share * self.total_hotkey_alpha / self.total_hotkey_shares / UNIT

    @property
    def price(self) -> float:
        return subnet_price(self.netuid, self.subnet_tao_in_pool, self.subnet_alpha_in_pool)

    @property
    def tao_value(self) -> float:
        return self.alpha_balance * self.price


@dataclass(frozen=True)
class BalanceTotals:
    """Portfolio totals in TAO (total_alpha in alpha units)."""
    total_tao: float = 0.0
    total_alpha: float = 0.0
    total_alpha_tao_value: float = 0.0
    staked_to_root: float = 0.0


@dataclass
class BalanceReport:
    """Result of one balance aggregation.

    failed_hotkeys maps each hotkey whose reads failed to the error text;
    the positions and totals cover every other hotkey.
    """
    owner: str
    positions: List[StakePosition] = field(default_factory=list)
    totals: BalanceTotals = field(default_factory=BalanceTotals)
    failed_hotkeys: Dict[str, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_hotkeys)


def summarize_positions(positions: List[StakePosition]) -> BalanceTotals:
    """Fold positions into totals.

    Uses math.fsum so the totals do not depend on the order the hotkey
    reads completed in.
    """
    root = [p.tao_value for p in positions if p.is_root]
    alpha_positions = [p for p in positions if not p.is_root]
    return BalanceTotals(
        total_tao=math.fsum(p.tao_value for p in positions),
        total_alpha=math.fsum(p.alpha_balance for p in alpha_positions),
        total_alpha_tao_value=math.fsum(p.tao_value for p in alpha_positions),
        staked_to_root=math.fsum(root),
    )


def _retrieve_failure(task: asyncio.Future) -> None:
    # Hotkeys that already failed may never await a shared pool read
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Subnet pool read failed", error=str(task.exception()))


class _SubnetPools:
    """Subnet pool reads shared by every hotkey in one aggregation."""

    def __init__(self, reader: ChainReader):
        self._reader = reader
        self._tasks: Dict[int, asyncio.Task] = {}

    def get(self, netuid: int) -> Awaitable[Tuple[int, int]]:
        task = self._tasks.get(netuid)
        if task is None:
            task = asyncio.ensure_future(self._fetch(netuid))
            task.add_done_callback(_retrieve_failure)
            self._tasks[netuid] = task
        return task

    async def _fetch(self, netuid: int) -> Tuple[int, int]:
        tao, alpha = await asyncio.gather(
            self._reader.subnet_tao(netuid),
            self._reader.subnet_alpha_in(netuid),
        )
        return int(tao or 0), int(alpha or 0)

    def cancel_pending(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()


async def _hotkey_subnet(reader: ChainReader, hotkey: str, netuid: int) -> Tuple[int, float]:
    total_alpha, total_shares = await asyncio.gather(
        reader.total_hotkey_alpha(hotkey, netuid),
        reader.total_hotkey_shares(hotkey, netuid),
    )
    return int(total_alpha or 0), decode_fixed_u128(total_shares)


async def _hotkey_positions(
    owner: str,
    hotkey: str,
    reader: ChainReader,
    pools: _SubnetPools,
    semaphore: asyncio.Semaphore,
) -> List[StakePosition]:
    async with semaphore:
        entries = await reader.alpha_entries(hotkey, owner)
        netuids = sorted({int(netuid) for netuid, _ in entries})
        if not netuids:
            return []

        # One read per distinct subnet, all in flight together
        reads = await asyncio.gather(
            *(_hotkey_subnet(reader, hotkey, netuid) for netuid in netuids),
            *(pools.get(netuid) for netuid in netuids),
        )
        hotkey_data = dict(zip(netuids, reads[:len(netuids)]))
        pool_data = dict(zip(netuids, reads[len(netuids):]))

    positions = []
    for netuid, raw_share in entries:
        netuid = int(netuid)
        total_alpha, total_shares = hotkey_data[netuid]
        tao_in_pool, alpha_in_pool = pool_data[netuid]
        positions.append(StakePosition(
            coldkey=owner,
            hotkey=hotkey,
            netuid=netuid,
            alpha_share=decode_fixed_u128(raw_share),
            total_hotkey_alpha=total_alpha,
            total_hotkey_shares=total_shares,
            subnet_tao_in_pool=tao_in_pool,
            subnet_alpha_in_pool=alpha_in_pool,
        ))
    return positions


async def compute_balances(
    owner: str,
    reader: ChainReader,
    concurrency: Optional[int] = None,
) -> BalanceReport:
    """Compute every stake position and the portfolio totals for a coldkey.

    Hotkeys are aggregated concurrently. A failure while reading one hotkey
    is recorded in ``failed_hotkeys`` and does not abort the others.

    Args:
        owner: Coldkey SS58 address
        reader: Chain reader collaborator
        concurrency: Max hotkeys in flight (defaults to settings)

    Returns:
        BalanceReport with positions sorted by (netuid, hotkey)

    Raises:
        ChainReadError: If the owner's hotkey list cannot be read
    """
    if concurrency is None:
        concurrency = get_settings().chain_read_concurrency

    try:
        hotkeys = await reader.staking_hotkeys(owner)
    except ChainReadError:
        raise
    except Exception as e:
        raise ChainReadError(f"StakingHotkeys[{owner}] failed: {e}", storage_function="StakingHotkeys") from e

    hotkeys = list(dict.fromkeys(hotkeys or []))
    logger.debug("Aggregating balances", owner=owner, hotkeys=len(hotkeys))

    pools = _SubnetPools(reader)
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _guarded(hotkey: str) -> Tuple[str, Optional[List[StakePosition]], Optional[str]]:
        try:
            return hotkey, await _hotkey_positions(owner, hotkey, reader, pools, semaphore), None
        except Exception as e:
            logger.warning("Hotkey balance read failed", owner=owner, hotkey=hotkey, error=str(e))
            return hotkey, None, str(e) or type(e).__name__

    try:
        outcomes = await asyncio.gather(*(_guarded(hotkey) for hotkey in hotkeys))
    finally:
        pools.cancel_pending()

    report = BalanceReport(owner=owner)
    positions: List[StakePosition] = []
    for hotkey, hotkey_positions, error in outcomes:
        if error is not None:
            report.failed_hotkeys[hotkey] = error
        else:
            positions.extend(hotkey_positions)

    positions.sort(key=lambda p: (p.netuid, p.hotkey))
    report.positions = positions
    report.totals = summarize_positions(positions)

    logger.info(
        "Balances computed",
        owner=owner,
        positions=len(positions),
        total_tao=report.totals.total_tao,
        failed_hotkeys=len(report.failed_hotkeys),
    )
    return report
