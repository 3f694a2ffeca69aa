# Core module
from trusted_stake.core.config import get_settings, Settings
from trusted_stake.core.redis import cache, get_redis

__all__ = ["get_settings", "Settings", "cache", "get_redis"]
