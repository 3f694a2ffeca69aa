"""Average-price PnL over stake/unstake history.

Per subnet (root excluded):

- every trade is priced at tao / alpha and valued at tao * price
- avg_buy_price = Σ stake value / Σ stake tao
- realized = Σ unstake value - Σ unstake tao * avg_buy_price
- unrealized = current alpha * current price - current alpha * avg_buy_price

The computation can be long for big histories, so ``PnLEngine`` runs it in
a worker pool. Requests and responses are plain tuples so they pickle
cleanly and nothing mutable is shared with the worker. Results are
memoized in an LRU cache keyed by a fingerprint of the inputs.
"""

import asyncio
import hashlib
import json
import math
from collections import OrderedDict
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Iterable, NamedTuple, Optional, Tuple

import structlog

from trusted_stake.core.config import get_settings

logger = structlog.get_logger()

ROOT_NETUID = 0
STAKING = "STAKING"
UNSTAKING = "UNSTAKING"


@dataclass(frozen=True)
class PnLResult:
    """PnL for one subnet, in TAO."""
    avg_buy_price: float
    realized_pnl: float
    unrealized_pnl: float
    total_pnl: float


class TradeRecord(NamedTuple):
    """Wire form of one transaction inside a PnLRequest."""
    netuid: int
    action: str
    tao: float
    alpha: float


class PositionSnapshot(NamedTuple):
    """Wire form of one current position inside a PnLRequest."""
    netuid: int
    alpha_balance: float
    price: float


class PnLRequest(NamedTuple):
    trades: Tuple[TradeRecord, ...]
    positions: Tuple[PositionSnapshot, ...]


class PnLResponse(NamedTuple):
    # (netuid, avg_buy_price, realized, unrealized, total)
    rows: Tuple[Tuple[int, float, float, float, float], ...]

    def to_results(self) -> Dict[int, PnLResult]:
        return {row[0]: PnLResult(*row[1:]) for row in self.rows}


# ==================== Message Building ====================

def _action_name(action: Any) -> str:
    return getattr(action, "value", action)


def to_trade(tx: Any) -> TradeRecord:
    """Reduce a transaction to its trade record.

    Accepts StakingTransaction models (rao amounts exposed through
    tao_amount/alpha_amount) or anything already carrying netuid, action,
    tao and alpha in TAO units.
    """
    if isinstance(tx, TradeRecord):
        return tx
    if hasattr(tx, "tao_amount"):
        return TradeRecord(int(tx.netuid), _action_name(tx.action), tx.tao_amount, tx.alpha_amount)
    return TradeRecord(int(tx.netuid), _action_name(tx.action), float(tx.tao), float(tx.alpha))


def to_snapshot(position: Any) -> PositionSnapshot:
    if isinstance(position, PositionSnapshot):
        return position
    return PositionSnapshot(int(position.netuid), float(position.alpha_balance), float(position.price))


def build_request(transactions: Iterable[Any], positions: Iterable[Any]) -> PnLRequest:
    return PnLRequest(
        trades=tuple(to_trade(tx) for tx in transactions),
        positions=tuple(to_snapshot(p) for p in positions),
    )


def _digest(rows: Iterable[Tuple]) -> str:
    payload = json.dumps([list(row) for row in rows], separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def transaction_fingerprint(transactions: Iterable[Any]) -> str:
    """Deterministic sha256 fingerprint of a transaction batch."""
    return _digest(to_trade(tx) for tx in transactions)


def request_fingerprint(request: PnLRequest) -> str:
    return f"{_digest(request.trades)}:{_digest(request.positions)}"


# ==================== Computation ====================

class _SubnetBook:
    __slots__ = ("bought_tao", "bought_value", "sold_tao", "sold_value")

    def __init__(self):
        self.bought_tao = 0.0
        self.bought_value = 0.0
        self.sold_tao = 0.0
        self.sold_value = 0.0

    def add(self, trade: TradeRecord) -> None:
        # A trade without alpha carries no price
        if trade.alpha <= 0:
            return
        price = trade.tao / trade.alpha
        value = trade.tao * price
        if trade.action == STAKING:
            self.bought_tao += trade.tao
            self.bought_value += value
        elif trade.action == UNSTAKING:
            self.sold_tao += trade.tao
            self.sold_value += value

    def evaluate(self, holding: Optional[Tuple[float, float]]) -> Optional[PnLResult]:
        avg_buy_price = self.bought_value / self.bought_tao if self.bought_tao > 0 else 0.0
        if avg_buy_price <= 0:
            return None

        realized = self.sold_value - self.sold_tao * avg_buy_price if self.sold_tao > 0 else 0.0

        unrealized = 0.0
        if holding is not None:
            alpha, market_value = holding
            unrealized = market_value - alpha * avg_buy_price

        total = realized + unrealized
        if not all(math.isfinite(v) for v in (avg_buy_price, realized, unrealized, total)):
            return None
        return PnLResult(avg_buy_price, realized, unrealized, total)


def _holdings(positions: Iterable[PositionSnapshot]) -> Dict[int, Tuple[float, float]]:
    """Current (alpha, market value) per subnet, summed over hotkeys."""
    holdings: Dict[int, Tuple[float, float]] = {}
    for p in positions:
        alpha, value = holdings.get(p.netuid, (0.0, 0.0))
        holdings[p.netuid] = (alpha + p.alpha_balance, value + p.alpha_balance * p.price)
    return holdings


def handle_request(request: PnLRequest) -> PnLResponse:
    """Worker entry point: compute PnL for one request message."""
    books: Dict[int, _SubnetBook] = {}
    for trade in request.trades:
        if trade.netuid == ROOT_NETUID:
            continue
        book = books.get(trade.netuid)
        if book is None:
            book = books[trade.netuid] = _SubnetBook()
        book.add(trade)

    holdings = _holdings(request.positions)
    rows = []
    for netuid in sorted(books):
        result = books[netuid].evaluate(holdings.get(netuid))
        if result is not None:
            rows.append((netuid, result.avg_buy_price, result.realized_pnl,
                         result.unrealized_pnl, result.total_pnl))
    return PnLResponse(rows=tuple(rows))


def compute_pnl(transactions: Iterable[Any], positions: Iterable[Any]) -> Dict[int, PnLResult]:
    """Compute PnL per subnet on the calling thread.

    Args:
        transactions: Stake/unstake history (StakingTransaction or TradeRecord)
        positions: Current positions (anything with netuid, alpha_balance, price)

    Returns:
        Dict mapping netuid to PnLResult. Root, subnets without buys and
        non-finite results are omitted.
    """
    return handle_request(build_request(transactions, positions)).to_results()


# ==================== Cache & Engine ====================

class PnLCache:
    """Bounded LRU cache of PnL results keyed by request fingerprint."""

    def __init__(self, max_entries: int = 128):
        self.max_entries = max(1, max_entries)
        self._entries: "OrderedDict[str, Dict[int, PnLResult]]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Optional[Dict[int, PnLResult]]:
        results = self._entries.get(key)
        if results is None:
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return results

    def put(self, key: str, results: Dict[int, PnLResult]) -> None:
        self._entries[key] = results
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("PnL cache eviction", key=evicted[:16])

    def clear(self) -> None:
        self._entries.clear()


class PnLEngine:
    """Memoized PnL computation off the event loop.

    Args:
        executor: Executor to run requests in. When omitted, a process pool
            is created lazily (settings.pnl_executor == "process") or the
            computation runs inline ("inline").
        cache: Result cache; defaults to an LRU bounded by
            settings.pnl_cache_max_entries.
    """

    def __init__(
        self,
        executor: Optional[Executor] = None,
        cache: Optional[PnLCache] = None,
        mode: Optional[str] = None,
    ):
        settings = get_settings()
        self.cache = cache if cache is not None else PnLCache(settings.pnl_cache_max_entries)
        self.mode = mode or settings.pnl_executor
        self._max_workers = settings.pnl_max_workers
        self._executor = executor
        self._owns_executor = False

    def _get_executor(self) -> Optional[Executor]:
        if self._executor is None and self.mode == "process":
            self._executor = ProcessPoolExecutor(max_workers=self._max_workers)
            self._owns_executor = True
        return self._executor

    async def compute(self, transactions: Iterable[Any], positions: Iterable[Any]) -> Dict[int, PnLResult]:
        """Compute (or recall) PnL for a transaction batch and position snapshot."""
        request = build_request(transactions, positions)
        key = request_fingerprint(request)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("PnL cache hit", trades=len(request.trades))
            return dict(cached)

        executor = self._get_executor()
        if executor is None:
            response = handle_request(request)
        else:
            loop = asyncio.get_running_loop()
            response = await loop.run_in_executor(executor, handle_request, request)

        results = response.to_results()
        self.cache.put(key, results)
        logger.info(
            "PnL computed",
            trades=len(request.trades),
            subnets=len(results),
            cache_entries=len(self.cache),
        )
        return dict(results)

    def shutdown(self) -> None:
        """Stop the worker pool if this engine created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._owns_executor = False
