"""Portfolio schemas."""

import math
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BalanceInfo(BaseModel):
    """One (hotkey, subnet) position enriched with PnL."""
    model_config = ConfigDict(from_attributes=True)

    netuid: int
    hotkey: str
    alpha: float = 0.0
    price: float = 0.0
    tao: float = 0.0
    avg_buy_price: Optional[float] = None
    pnl: Optional[float] = None
    realized_pnl: Optional[float] = None
    unrealized_pnl: Optional[float] = None

    @field_validator("alpha", "price", "tao")
    @classmethod
    def finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("must be finite")
        return v


class SubnetPnL(BaseModel):
    """PnL for one subnet (all hotkeys combined)."""
    netuid: int
    avg_buy_price: float
    realized_pnl: float
    unrealized_pnl: float
    total_pnl: float


class PortfolioSummary(BaseModel):
    """Balances, totals and PnL for one coldkey."""
    wallet_address: str
    generation: int = 0

    # Totals (TAO)
    total_staked_tao: float = Field(default=0.0)
    total_alpha: float = Field(default=0.0)
    balance_staked_to_alpha: float = Field(default=0.0)
    balance_staked_to_root: float = Field(default=0.0)

    # PnL (TAO)
    total_earnings: float = Field(default=0.0)
    pnl_by_subnet: Dict[int, SubnetPnL] = Field(default_factory=dict)

    # USD values (informational only)
    tao_price_usd: Optional[float] = None
    total_staked_usd: Optional[float] = None

    balances: List[BalanceInfo] = Field(default_factory=list)
    failed_hotkeys: Dict[str, str] = Field(default_factory=dict)
    transaction_count: int = 0
    pnl_available: bool = True

    as_of: datetime

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_hotkeys) or not self.pnl_available
