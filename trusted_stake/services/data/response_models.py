"""Pydantic response models for the Trusted Stake REST API.

These models validate API responses and provide typed access to data.
Amounts are kept as the raw rao strings the API sends; properties expose
them in TAO/alpha units.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

RAO_PER_TAO = 1_000_000_000


def rao_to_tao(value: Any) -> float:
    """Convert a rao amount (int, float or numeric string) to TAO units."""
    if value is None or value == "":
        return 0.0
    return float(value) / RAO_PER_TAO


# ==================== Timestamp Parsing ====================

def parse_api_timestamp(value: Any) -> Optional[datetime]:
    """Parse an API timestamp into a naive UTC datetime.

    Handles:
    - ISO8601 with Z suffix: "2024-01-15T12:00:00Z"
    - ISO8601 with timezone offset: "2024-01-15T12:00:00+00:00"
    - Plain dates: "2024-01-15"
    - Unix timestamp as int, float or numeric string
    - None/empty values
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)

    if isinstance(value, str):
        value = value.strip()
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"

        try:
            dt = datetime.fromisoformat(value)
            if dt.tzinfo is not None:
                dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
            return dt
        except ValueError:
            pass

        try:
            return datetime.fromtimestamp(float(value), timezone.utc).replace(tzinfo=None)
        except (ValueError, OSError, OverflowError):
            pass

    raise ValueError(f"Cannot parse timestamp: {value!r}")


# ==================== Base Models ====================

class PaginatedResponse(BaseModel):
    """Paginated envelope used by every list endpoint.

    Items stay raw so one malformed record can be skipped without
    rejecting the page.
    """
    model_config = ConfigDict(populate_by_name=True)

    data: List[Any] = Field(default_factory=list)
    page: int = Field(default=1, validation_alias=AliasChoices("page", "currentPage"))
    total_pages: int = Field(default=1, alias="totalPages")
    total: Optional[int] = None

    @field_validator("data", mode="before")
    @classmethod
    def ensure_list(cls, v: Any) -> List[Any]:
        if v is None:
            return []
        if isinstance(v, list):
            return v
        return [v]


# ==================== Staking History ====================

class StakingAction(str, Enum):
    STAKING = "STAKING"
    UNSTAKING = "UNSTAKING"


class StakingTransaction(BaseModel):
    """Stake/unstake record from GET /staking."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    height: Optional[int] = None
    timestamp: Optional[datetime] = None
    extrinsic_id: Optional[int] = None
    coldkey: str
    hotkey: str
    net_uid: int
    tao: str = "0"  # rao
    alpha: str = "0"  # rao
    action: StakingAction

    @field_validator("id", "tao", "alpha", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_api_timestamp(v)

    @property
    def netuid(self) -> int:
        return self.net_uid

    @property
    def tao_amount(self) -> float:
        """TAO moved by the trade."""
        return rao_to_tao(self.tao)

    @property
    def alpha_amount(self) -> float:
        """Alpha moved by the trade."""
        return rao_to_tao(self.alpha)


# ==================== Staking Stats ====================

class StatsTimeframe(str, Enum):
    ONE_MIN = "1min"
    FIVE_MIN = "5min"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    BLOCKS = "blocks"


class StakingStatsRecord(BaseModel):
    """Trading stats bucket from /staking/stats/temporal or /staking/stats/blocks.

    Temporal buckets carry tsStart/tsEnd, block buckets carry
    blockStart/blockEnd. Volumes are rao strings.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    net_uid: int = Field(alias="netUid")
    ts_start: Optional[str] = Field(default=None, alias="tsStart")
    ts_end: Optional[str] = Field(default=None, alias="tsEnd")
    block_start: Optional[int] = Field(default=None, alias="blockStart")
    block_end: Optional[int] = Field(default=None, alias="blockEnd")

    buy_volume_tao: str = Field(default="0", alias="buyVolumeTao")
    buy_volume_alpha: str = Field(default="0", alias="buyVolumeAlpha")
    sell_volume_tao: str = Field(default="0", alias="sellVolumeTao")
    sell_volume_alpha: str = Field(default="0", alias="sellVolumeAlpha")
    total_volume_tao: str = Field(default="0", alias="totalVolumeTao")
    total_volume_alpha: str = Field(default="0", alias="totalVolumeAlpha")

    buys: int = 0
    sells: int = 0
    transactions: int = 0
    buyers: int = 0
    sellers: int = 0
    traders: int = 0

    @field_validator(
        "buy_volume_tao", "buy_volume_alpha", "sell_volume_tao",
        "sell_volume_alpha", "total_volume_tao", "total_volume_alpha",
        mode="before",
    )
    @classmethod
    def coerce_volume(cls, v: Any) -> str:
        if v is None:
            return "0"
        return str(v)

    @field_validator("buys", "sells", "transactions", "buyers", "sellers", "traders", mode="before")
    @classmethod
    def coerce_count(cls, v: Any) -> int:
        # Older API versions return participant lists instead of counts
        if isinstance(v, (list, tuple, set)):
            return len(v)
        if v is None or v == "":
            return 0
        return int(v)

    @property
    def is_block_record(self) -> bool:
        return self.block_start is not None and self.ts_end is None

    @property
    def buy_volume(self) -> float:
        return rao_to_tao(self.buy_volume_tao)

    @property
    def sell_volume(self) -> float:
        return rao_to_tao(self.sell_volume_tao)

    @property
    def total_volume(self) -> float:
        return rao_to_tao(self.total_volume_tao)


# ==================== Subnets & Prices ====================

class SubnetSnapshot(BaseModel):
    """Subnet pool state from GET /subnets, in TAO/alpha units."""
    netuid: int
    name: str = ""
    symbol: str = ""
    tao_in_pool: float = 0.0
    alpha_in_pool: float = 0.0
    alpha_staked: float = 0.0
    emission: float = 0.0
    tao_volume: float = 0.0

    @classmethod
    def from_api(cls, raw: dict) -> "SubnetSnapshot":
        """Build from a raw /subnets row (rao strings)."""
        return cls(
            netuid=int(raw["net_uid"]),
            name=raw.get("name") or "",
            symbol=raw.get("symbol") or "",
            tao_in_pool=rao_to_tao(raw.get("tao_in_pool")),
            alpha_in_pool=rao_to_tao(raw.get("alpha_in_pool")),
            alpha_staked=rao_to_tao(raw.get("alpha_staked")),
            emission=rao_to_tao(raw.get("emission")),
            tao_volume=rao_to_tao(raw.get("tao_volume")),
        )


class AlphaPrice(BaseModel):
    """Latest alpha price from GET /prices/latest."""
    net_uid: int
    price_in_tao: float
    timestamp: Optional[datetime] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v: Any) -> Optional[datetime]:
        return parse_api_timestamp(v)
