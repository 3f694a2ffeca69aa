"""Pydantic schemas for computed portfolio output."""

from trusted_stake.schemas.portfolio import (
    BalanceInfo,
    PortfolioSummary,
    SubnetPnL,
)

__all__ = ["BalanceInfo", "PortfolioSummary", "SubnetPnL"]
