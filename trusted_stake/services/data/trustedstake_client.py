"""Trusted Stake REST API client with rate limiting, retries and caching.

Base URL: Settings.api_base_url (https://api.app.trustedstake.ai)

Endpoints used:
- GET /staking                  stake/unstake history, paginated
- GET /staking/stats/temporal   trading stats per time bucket
- GET /staking/stats/blocks     trading stats per block range
- GET /prices/latest            latest alpha price per subnet
- GET /subnets                  subnet pool state

Resilience:
- Local sliding-window rate limit plus server Retry-After handling
- Exponential backoff with jitter for transient failures
- Optional Redis caching for slow-moving responses (prices, subnets)
- Per-record validation; malformed records are logged and skipped
"""

import asyncio
import random
from datetime import datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from trusted_stake.core.config import get_settings
from trusted_stake.core.redis import cache
from trusted_stake.services.data.response_models import (
    AlphaPrice,
    PaginatedResponse,
    StakingAction,
    StakingStatsRecord,
    StakingTransaction,
    StatsTimeframe,
    SubnetSnapshot,
)

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)

# Resolutions too dense to page through; only the newest page is fetched
SINGLE_PAGE_TIMEFRAMES = (StatsTimeframe.ONE_MIN, StatsTimeframe.FIVE_MIN)


class TrustedStakeAPIError(Exception):
    """Trusted Stake API error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TrustedStakeRateLimitError(TrustedStakeAPIError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


def validate_records(items: List[Any], model: Type[T], endpoint: str) -> List[T]:
    """Validate raw records one by one, skipping the ones that do not parse."""
    records = []
    skipped = 0
    for item in items:
        try:
            records.append(model.model_validate(item))
        except ValidationError as e:
            skipped += 1
            logger.warning(
                "Skipping invalid record",
                endpoint=endpoint,
                model=model.__name__,
                errors=e.error_count(),
            )
    if skipped:
        logger.info("Records skipped during validation", endpoint=endpoint, skipped=skipped, kept=len(records))
    return records


def parse_page(payload: Any, endpoint: str) -> PaginatedResponse:
    """Validate a paginated envelope; a malformed one is an API error."""
    try:
        return PaginatedResponse.model_validate(payload)
    except ValidationError as e:
        logger.error("Invalid response envelope", endpoint=endpoint, errors=e.error_count())
        raise TrustedStakeAPIError(f"Invalid response from {endpoint}: {e}", status_code=200) from e


class TrustedStakeClient:
    """Async client for the Trusted Stake REST API.

    Args:
        base_url: Override Settings.api_base_url
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.rate_limit = settings.api_rate_limit_per_minute
        self._transport = transport
        self._request_times: List[datetime] = []
        self._lock = asyncio.Lock()
        self._retry_after_until: Optional[datetime] = None

    def _headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    async def _check_rate_limit(self) -> None:
        """Check and enforce rate limiting (both local and server-signaled)."""
        settings = get_settings()

        if self._retry_after_until and settings.enable_retry_after:
            now = datetime.utcnow()
            if now < self._retry_after_until:
                wait_time = (self._retry_after_until - now).total_seconds()
                logger.warning(
                    "Waiting for Retry-After period",
                    wait_seconds=wait_time,
                    until=self._retry_after_until.isoformat(),
                )
                await asyncio.sleep(wait_time)
            self._retry_after_until = None

        async with self._lock:
            now = datetime.utcnow()
            self._request_times = [
                t for t in self._request_times
                if (now - t).total_seconds() < 60
            ]

            if len(self._request_times) >= self.rate_limit:
                oldest = self._request_times[0]
                wait_time = 60 - (now - oldest).total_seconds()
                if wait_time > 0:
                    logger.warning("Local rate limit reached, waiting", wait_seconds=wait_time)
                    await asyncio.sleep(wait_time)

            self._request_times.append(datetime.utcnow())

    def _parse_retry_after(self, response: httpx.Response) -> Optional[int]:
        """Parse Retry-After as delta-seconds or HTTP-date."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        try:
            return int(retry_after)
        except ValueError:
            pass

        try:
            dt = parsedate_to_datetime(retry_after)
            delta = (dt - datetime.now(dt.tzinfo)).total_seconds()
            return max(0, int(delta))
        except (ValueError, TypeError):
            pass

        return None

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff capped at api_max_backoff_seconds, plus 0-25% jitter."""
        settings = get_settings()
        delay = settings.api_initial_backoff_seconds * (settings.api_backoff_multiplier ** attempt)
        delay = min(delay, settings.api_max_backoff_seconds)
        return delay + random.uniform(0, 0.25 * delay)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        cache_key: Optional[str] = None,
        cache_ttl: Optional[timedelta] = None,
    ) -> Any:
        """Make an API request with rate limiting, retries, and caching.

        Raises:
            TrustedStakeAPIError: On API errors or exhausted retries
            TrustedStakeRateLimitError: On rate limit (after retries exhausted)
        """
        settings = get_settings()
        use_cache = bool(cache_key) and settings.enable_response_cache

        if use_cache:
            cached = await cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache hit", key=cache_key, endpoint=endpoint)
                return cached

        await self._check_rate_limit()

        url = f"{self.base_url}{endpoint}"
        last_error: Optional[Exception] = None

        timeout = httpx.Timeout(
            connect=settings.api_connect_timeout_seconds,
            read=settings.api_read_timeout_seconds,
            write=10.0,
            pool=5.0,
        )

        for attempt in range(settings.api_max_retries + 1):
            try:
                logger.debug(
                    "API request",
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    params=params,
                )

                async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=self._headers(),
                        params=params,
                    )

                if response.status_code == 429:
                    retry_after = self._parse_retry_after(response)

                    if retry_after is not None and settings.enable_retry_after:
                        retry_after = min(retry_after, settings.retry_after_max_wait_seconds)
                        logger.warning(
                            "Rate limit exceeded, Retry-After received",
                            retry_after_seconds=retry_after,
                            endpoint=endpoint,
                        )
                        if attempt < settings.api_max_retries:
                            await asyncio.sleep(retry_after)
                            continue
                        self._retry_after_until = datetime.utcnow() + timedelta(seconds=retry_after)

                    raise TrustedStakeRateLimitError("Rate limit exceeded", retry_after=retry_after)

                if response.status_code >= 500 and attempt < settings.api_max_retries:
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        "Server error, retrying",
                        endpoint=endpoint,
                        status=response.status_code,
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue

                if response.status_code != 200:
                    error_body = response.text[:500]
                    logger.error(
                        "API error",
                        status=response.status_code,
                        endpoint=endpoint,
                        body=error_body,
                    )
                    raise TrustedStakeAPIError(
                        f"API error {response.status_code}: {error_body}",
                        status_code=response.status_code,
                    )

                try:
                    data = response.json()
                except ValueError as e:
                    raise TrustedStakeAPIError(f"Invalid JSON from {endpoint}: {e}", status_code=200) from e

                if use_cache and cache_ttl:
                    await cache.set(cache_key, data, cache_ttl)
                    logger.debug("Cached response", key=cache_key, ttl_seconds=cache_ttl.total_seconds())

                return data

            except httpx.HTTPError as e:
                last_error = e

                if attempt < settings.api_max_retries:
                    backoff = self._calculate_backoff(attempt)
                    logger.warning(
                        "Transient error, retrying",
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        backoff_seconds=backoff,
                        error=str(e),
                    )
                    await asyncio.sleep(backoff)
                else:
                    logger.error(
                        "Request failed after retries",
                        endpoint=endpoint,
                        attempts=settings.api_max_retries + 1,
                        error=str(e),
                    )

        raise TrustedStakeAPIError(
            f"Request failed after {settings.api_max_retries + 1} attempts: {last_error}",
        )

    # ==================== Staking History ====================

    async def get_staking_transactions(
        self,
        page: int = 1,
        limit: Optional[int] = None,
        sort_direction: str = "DESC",
        netuid: Optional[int] = None,
        action: Optional[Union[StakingAction, str]] = None,
        coldkey: Optional[str] = None,
        hotkey: Optional[str] = None,
    ) -> PaginatedResponse:
        """Get one page of stake/unstake history.

        Endpoint: GET /staking

        History is never cached; PnL must see every new trade.
        """
        params: Dict[str, Any] = {
            "page": page,
            "limit": limit or get_settings().staking_history_page_size,
            "sortDirection": sort_direction,
        }
        if netuid is not None:
            params["netUid"] = netuid
        if action is not None:
            params["action"] = getattr(action, "value", action)
        if coldkey:
            params["coldkey"] = coldkey
        if hotkey:
            params["hotkey"] = hotkey

        response = await self._request("GET", "/staking", params=params)
        return parse_page(response, "/staking")

    async def get_all_staking_transactions(
        self,
        coldkey: str,
        netuid: Optional[int] = None,
        hotkey: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> List[StakingTransaction]:
        """Fetch a wallet's full staking history across pages.

        Args:
            coldkey: Wallet address
            netuid: Optional subnet filter
            hotkey: Optional hotkey filter
            max_pages: Safety limit (defaults to settings)

        Returns:
            Validated transactions, newest first
        """
        settings = get_settings()
        max_pages = max_pages or settings.staking_history_max_pages

        raw: List[Any] = []
        page = 1
        while page <= max_pages:
            response = await self.get_staking_transactions(
                page=page,
                coldkey=coldkey,
                netuid=netuid,
                hotkey=hotkey,
            )
            if not response.data:
                break

            raw.extend(response.data)

            if page >= response.total_pages:
                break
            page += 1
        else:
            logger.warning("Staking history truncated at page limit", coldkey=coldkey, max_pages=max_pages)

        transactions = validate_records(raw, StakingTransaction, "/staking")
        logger.info("Fetched staking history", coldkey=coldkey, count=len(transactions), pages=page)
        return transactions

    # ==================== Staking Stats ====================

    async def get_staking_stats(
        self,
        timeframe: Union[StatsTimeframe, str] = StatsTimeframe.DAILY,
        netuid: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> List[StakingStatsRecord]:
        """Fetch trading stats for a timeframe.

        Endpoints:
            GET /staking/stats/blocks (timeframe "blocks")
            GET /staking/stats/temporal?resolution=<timeframe>

        1min and 5min only fetch the newest page. Results are sorted newest
        first (by tsStart, or blockStart for block buckets).
        """
        settings = get_settings()
        timeframe = StatsTimeframe(timeframe)
        max_pages = max_pages or settings.stats_max_pages
        if timeframe in SINGLE_PAGE_TIMEFRAMES:
            max_pages = 1

        is_blocks = timeframe == StatsTimeframe.BLOCKS
        endpoint = "/staking/stats/blocks" if is_blocks else "/staking/stats/temporal"

        raw: List[Any] = []
        page = 1
        while page <= max_pages:
            params: Dict[str, Any] = {
                "page": page,
                "limit": settings.stats_page_size,
                "sortDirection": "DESC",
            }
            if not is_blocks:
                params["resolution"] = timeframe.value
            if netuid is not None:
                params["net_uid"] = netuid

            response = parse_page(await self._request("GET", endpoint, params=params), endpoint)
            raw.extend(response.data)

            if page >= response.total_pages or not response.data:
                break
            page += 1
            await asyncio.sleep(settings.stats_page_delay_seconds)

        records = validate_records(raw, StakingStatsRecord, endpoint)
        if is_blocks:
            records.sort(key=lambda r: r.block_start or 0, reverse=True)
        else:
            records.sort(key=lambda r: r.ts_start or "", reverse=True)

        logger.info(
            "Fetched staking stats",
            timeframe=timeframe.value,
            netuid=netuid,
            records=len(records),
            pages=page,
        )
        return records

    # ==================== Prices & Subnets ====================

    async def get_alpha_prices(self) -> Dict[int, float]:
        """Latest alpha price in TAO per subnet.

        Endpoint: GET /prices/latest
        """
        response = await self._request(
            "GET",
            "/prices/latest",
            params={"page": 1, "limit": 1000, "sortDirection": "DESC"},
            cache_key="prices:latest",
            cache_ttl=timedelta(seconds=30),
        )
        prices = validate_records(parse_page(response, "/prices/latest").data, AlphaPrice, "/prices/latest")
        return {p.net_uid: p.price_in_tao for p in prices}

    async def get_subnets(self) -> List[SubnetSnapshot]:
        """Subnet pool state in TAO/alpha units, sorted by netuid.

        Endpoint: GET /subnets
        """
        response = await self._request(
            "GET",
            "/subnets",
            cache_key="subnets",
            cache_ttl=timedelta(seconds=30),
        )
        subnets = []
        for raw in parse_page(response, "/subnets").data:
            try:
                subnets.append(SubnetSnapshot.from_api(raw))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping invalid subnet", endpoint="/subnets", error=str(e))
        subnets.sort(key=lambda s: s.netuid)
        return subnets


# Lazy singleton client instance
_trustedstake_client: Optional[TrustedStakeClient] = None


def get_trustedstake_client() -> TrustedStakeClient:
    """Get or create the Trusted Stake client singleton.

    Client is created on first access, not at import time.
    """
    global _trustedstake_client
    if _trustedstake_client is None:
        _trustedstake_client = TrustedStakeClient()
    return _trustedstake_client
