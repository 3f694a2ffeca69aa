"""Balance, PnL and network statistics computations."""

from trusted_stake.services.analysis.balances import BalanceReport, StakePosition, compute_balances
from trusted_stake.services.analysis.pnl import PnLCache, PnLEngine, PnLResult, compute_pnl
from trusted_stake.services.analysis.stats import NetworkMetricsSnapshot, SubnetMetrics, subnet_metrics, summarize

__all__ = [
    "BalanceReport",
    "StakePosition",
    "compute_balances",
    "PnLCache",
    "PnLEngine",
    "PnLResult",
    "compute_pnl",
    "NetworkMetricsSnapshot",
    "SubnetMetrics",
    "subnet_metrics",
    "summarize",
]
