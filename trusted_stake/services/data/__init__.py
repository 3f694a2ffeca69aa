# Data services module
from trusted_stake.services.data.trustedstake_client import (
    TrustedStakeAPIError,
    TrustedStakeClient,
    TrustedStakeRateLimitError,
    get_trustedstake_client,
)
from trusted_stake.services.data.coingecko_client import TaoPrice, fetch_tao_price

__all__ = [
    "TrustedStakeAPIError",
    "TrustedStakeClient",
    "TrustedStakeRateLimitError",
    "get_trustedstake_client",
    "TaoPrice",
    "fetch_tao_price",
]
