"""Services for balance, PnL and network statistics computation."""
