"""CoinGecko API client for the TAO/USD price.

Uses the CoinGecko simple/price endpoint for the current TAO (Bittensor)
price and its 24h change. The price is informational: any failure returns
None and the caller shows the portfolio in TAO only.

API docs: https://docs.coingecko.com/reference/simple-price
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
import structlog

from trusted_stake.core.config import get_settings
from trusted_stake.core.redis import cache

logger = structlog.get_logger()

BITTENSOR_ID = "bittensor"
CACHE_KEY = "coingecko:tao_price"
CACHE_TTL_SECONDS = 60


@dataclass
class TaoPrice:
    """TAO price result from CoinGecko."""
    price_usd: float
    change_24h_pct: Optional[float] = None

    def to_usd(self, tao_amount: float) -> float:
        return tao_amount * self.price_usd


async def fetch_tao_price(transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[TaoPrice]:
    """Fetch current TAO price from CoinGecko.

    Returns TaoPrice on success, None on failure. The API key is optional;
    without one the public endpoint is used. Results are cached in Redis
    for 60 seconds.
    """
    settings = get_settings()

    if settings.enable_response_cache:
        cached = await cache.get(CACHE_KEY)
        if cached is not None:
            try:
                return TaoPrice(
                    price_usd=float(cached["price_usd"]),
                    change_24h_pct=cached.get("change_24h_pct"),
                )
            except (KeyError, ValueError, TypeError):
                logger.debug("Discarding corrupt cached TAO price")

    headers = {"Accept": "application/json"}
    if settings.coingecko_api_key:
        headers["x-cg-demo-api-key"] = settings.coingecko_api_key

    try:
        start = time.monotonic()
        async with httpx.AsyncClient(timeout=httpx.Timeout(10.0), transport=transport) as client:
            response = await client.get(
                f"{settings.coingecko_base_url}/simple/price",
                params={
                    "ids": BITTENSOR_ID,
                    "vs_currencies": "usd",
                    "include_24hr_change": "true",
                },
                headers=headers,
            )
        latency_ms = (time.monotonic() - start) * 1000

        if response.status_code != 200:
            logger.warning(
                "CoinGecko API error",
                status=response.status_code,
                body=response.text[:200],
                latency_ms=round(latency_ms, 1),
            )
            return None

        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("CoinGecko request failed", error=str(e))
        return None

    bt = data.get(BITTENSOR_ID, {}) if isinstance(data, dict) else {}
    price_usd = bt.get("usd")
    if not isinstance(price_usd, (int, float)) or price_usd <= 0:
        logger.warning("CoinGecko returned no/zero price", data=data)
        return None

    change = bt.get("usd_24h_change")
    result = TaoPrice(
        price_usd=float(price_usd),
        change_24h_pct=round(change, 2) if isinstance(change, (int, float)) else None,
    )

    if settings.enable_response_cache:
        await cache.set(
            CACHE_KEY,
            {"price_usd": result.price_usd, "change_24h_pct": result.change_24h_pct},
            timedelta(seconds=CACHE_TTL_SECONDS),
        )

    logger.info(
        "CoinGecko TAO price fetched",
        price_usd=result.price_usd,
        change_24h=result.change_24h_pct,
        latency_ms=round(latency_ms, 1),
    )
    return result
