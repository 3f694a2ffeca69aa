"""Portfolio refresh orchestration.

One refresh reads balances from chain, fetches the staking history, runs
the PnL engine and assembles a PortfolioSummary.

Refreshes are tagged with a generation number per coldkey. A refresh that
finishes after a newer one for the same coldkey has started (or after the
active account was switched away from it) is reported as stale and its
result is dropped, so an old in-flight refresh can never overwrite newer
state.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from trusted_stake.schemas.portfolio import BalanceInfo, PortfolioSummary, SubnetPnL
from trusted_stake.services.analysis.balances import BalanceReport, compute_balances
from trusted_stake.services.analysis.pnl import PnLEngine, PnLResult
from trusted_stake.services.chain.reader import ChainReader, SubtensorChainReader
from trusted_stake.services.data.coingecko_client import TaoPrice, fetch_tao_price
from trusted_stake.services.data.response_models import StakingTransaction
from trusted_stake.services.data.trustedstake_client import (
    TrustedStakeAPIError,
    TrustedStakeClient,
    get_trustedstake_client,
)

logger = structlog.get_logger()


@dataclass
class RefreshOutcome:
    """Result of one refresh call.

    ``summary`` is None when the refresh was stale; the stored snapshot is
    left untouched in that case.
    """
    owner: str
    generation: int
    summary: Optional[PortfolioSummary] = None
    stale: bool = False


def build_summary(
    owner: str,
    generation: int,
    report: BalanceReport,
    pnl: Dict[int, PnLResult],
    transaction_count: int,
    pnl_available: bool = True,
    tao_price: Optional[TaoPrice] = None,
) -> PortfolioSummary:
    """Join balance positions with per-subnet PnL."""
    balances: List[BalanceInfo] = []
    for position in report.positions:
        result = None if position.is_root else pnl.get(position.netuid)
        balances.append(BalanceInfo(
            netuid=position.netuid,
            hotkey=position.hotkey,
            alpha=position.alpha_balance,
            price=position.price,
            tao=position.tao_value,
            avg_buy_price=result.avg_buy_price if result else None,
            pnl=result.total_pnl if result else None,
            realized_pnl=result.realized_pnl if result else None,
            unrealized_pnl=result.unrealized_pnl if result else None,
        ))

    pnl_by_subnet = {
        netuid: SubnetPnL(
            netuid=netuid,
            avg_buy_price=r.avg_buy_price,
            realized_pnl=r.realized_pnl,
            unrealized_pnl=r.unrealized_pnl,
            total_pnl=r.total_pnl,
        )
        for netuid, r in sorted(pnl.items())
    }

    totals = report.totals
    return PortfolioSummary(
        wallet_address=owner,
        generation=generation,
        total_staked_tao=totals.total_tao,
        total_alpha=totals.total_alpha,
        balance_staked_to_alpha=totals.total_alpha_tao_value,
        balance_staked_to_root=totals.staked_to_root,
        # Counted once per subnet, not once per hotkey row
        total_earnings=math.fsum(r.total_pnl for r in pnl.values()),
        pnl_by_subnet=pnl_by_subnet,
        balances=balances,
        failed_hotkeys=dict(report.failed_hotkeys),
        transaction_count=transaction_count,
        pnl_available=pnl_available,
        tao_price_usd=tao_price.price_usd if tao_price else None,
        total_staked_usd=tao_price.to_usd(totals.total_tao) if tao_price else None,
        as_of=datetime.now(timezone.utc),
    )


class PortfolioService:
    """Refreshes and stores the latest portfolio snapshot per coldkey.

    Args:
        client: REST client for staking history (defaults to the singleton)
        engine: PnL engine (created on first use)
        reader_factory: Builds a chain reader context manager when refresh()
            is not given one
        price_feed: Async callable returning a TaoPrice or None
    """

    def __init__(
        self,
        client: Optional[TrustedStakeClient] = None,
        engine: Optional[PnLEngine] = None,
        reader_factory: Callable[[], SubtensorChainReader] = SubtensorChainReader,
        price_feed=fetch_tao_price,
    ):
        self._client = client
        self._engine = engine
        self._reader_factory = reader_factory
        self._price_feed = price_feed
        self._generations: Dict[str, int] = {}
        self._snapshots: Dict[str, PortfolioSummary] = {}
        self.active_owner: Optional[str] = None

    @property
    def client(self) -> TrustedStakeClient:
        if self._client is None:
            self._client = get_trustedstake_client()
        return self._client

    @property
    def engine(self) -> PnLEngine:
        if self._engine is None:
            self._engine = PnLEngine()
        return self._engine

    def _next_generation(self, owner: str) -> int:
        generation = self._generations.get(owner, 0) + 1
        self._generations[owner] = generation
        return generation

    def is_current(self, owner: str, generation: int) -> bool:
        return self._generations.get(owner) == generation

    def switch_account(self, owner: str) -> None:
        """Make ``owner`` the active account.

        In-flight refreshes for the previous account become stale.
        """
        previous = self.active_owner
        if previous is not None and previous != owner:
            self._next_generation(previous)
            logger.info("Switched account", previous=previous, owner=owner)
        self.active_owner = owner

    def get_snapshot(self, owner: str) -> Optional[PortfolioSummary]:
        return self._snapshots.get(owner)

    async def _fetch_history(self, owner: str) -> Optional[List[StakingTransaction]]:
        try:
            return await self.client.get_all_staking_transactions(coldkey=owner)
        except TrustedStakeAPIError as e:
            logger.warning("Staking history unavailable, skipping PnL", owner=owner, error=str(e))
            return None

    async def _fetch_price(self) -> Optional[TaoPrice]:
        if self._price_feed is None:
            return None
        return await self._price_feed()

    async def _read_balances(self, owner: str, reader: Optional[ChainReader]) -> BalanceReport:
        if reader is not None:
            return await compute_balances(owner, reader)
        async with self._reader_factory() as chain_reader:
            return await compute_balances(owner, chain_reader)

    def _stale(self, owner: str, generation: int, stage: str) -> RefreshOutcome:
        logger.info(
            "Discarding stale portfolio refresh",
            owner=owner,
            generation=generation,
            latest=self._generations.get(owner),
            stage=stage,
        )
        return RefreshOutcome(owner=owner, generation=generation, stale=True)

    async def refresh(self, owner: str, reader: Optional[ChainReader] = None) -> RefreshOutcome:
        """Recompute balances and PnL for ``owner``.

        Raises:
            ChainReadError: If the owner's hotkeys cannot be read at all
        """
        generation = self._next_generation(owner)
        logger.debug("Portfolio refresh started", owner=owner, generation=generation)

        report, transactions, tao_price = await asyncio.gather(
            self._read_balances(owner, reader),
            self._fetch_history(owner),
            self._fetch_price(),
        )
        if not self.is_current(owner, generation):
            return self._stale(owner, generation, "balances")

        pnl: Dict[int, PnLResult] = {}
        if transactions is not None:
            pnl = await self.engine.compute(transactions, report.positions)
            if not self.is_current(owner, generation):
                return self._stale(owner, generation, "pnl")

        summary = build_summary(
            owner,
            generation,
            report,
            pnl,
            transaction_count=len(transactions or []),
            pnl_available=transactions is not None,
            tao_price=tao_price,
        )
        self._snapshots[owner] = summary

        logger.info(
            "Portfolio refreshed",
            owner=owner,
            generation=generation,
            positions=len(summary.balances),
            total_staked_tao=summary.total_staked_tao,
            total_earnings=summary.total_earnings,
            failed_hotkeys=len(summary.failed_hotkeys),
        )
        return RefreshOutcome(owner=owner, generation=generation, summary=summary)

    def shutdown(self) -> None:
        if self._engine is not None:
            self._engine.shutdown()


# Lazy singleton instance
_portfolio_service: Optional[PortfolioService] = None


def get_portfolio_service() -> PortfolioService:
    """Get or create the portfolio service singleton."""
    global _portfolio_service
    if _portfolio_service is None:
        _portfolio_service = PortfolioService()
    return _portfolio_service
