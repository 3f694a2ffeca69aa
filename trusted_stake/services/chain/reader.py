"""Chain reader collaborator.

The balance aggregation only needs six storage reads. ``ChainReader`` is
the contract; ``SubtensorChainReader`` implements it against a Subtensor
node through async-substrate-interface.
"""

from typing import Any, List, Optional, Protocol, Tuple, Union

import structlog
from async_substrate_interface.async_substrate import AsyncSubstrateInterface
from async_substrate_interface.errors import SubstrateRequestException
from scalecodec.utils.ss58 import ss58_encode

from trusted_stake.core.config import get_settings

logger = structlog.get_logger()

SS58_FORMAT = 42
MODULE = "SubtensorModule"


class ChainReadError(Exception):
    """A chain storage read failed."""

    def __init__(self, message: str, storage_function: Optional[str] = None):
        super().__init__(message)
        self.storage_function = storage_function


class ChainReader(Protocol):
    """Storage reads consumed by the balance aggregator.

    Share values may come back in any shape ``decode_fixed_u128`` accepts;
    alpha and pool amounts are integers in rao.
    """

    async def staking_hotkeys(self, coldkey: str) -> List[str]: ...

    async def alpha_entries(self, hotkey: str, coldkey: str) -> List[Tuple[int, Any]]: ...

    async def total_hotkey_alpha(self, hotkey: str, netuid: int) -> int: ...

    async def total_hotkey_shares(self, hotkey: str, netuid: int) -> Any: ...

    async def subnet_tao(self, netuid: int) -> int: ...

    async def subnet_alpha_in(self, netuid: int) -> int: ...


def decode_account_id(account_id: Union[str, tuple, list, bytes]) -> str:
    """Return an SS58 address for an AccountId in any client representation."""
    if isinstance(account_id, str):
        return account_id
    if isinstance(account_id, (tuple, list)) and account_id and isinstance(account_id[0], (tuple, list)):
        account_id = account_id[0]
    return ss58_encode(bytes(account_id).hex(), SS58_FORMAT)


def _unwrap(result: Any) -> Any:
    if hasattr(result, "value"):
        return result.value
    return result


class SubtensorChainReader:
    """ChainReader backed by a Subtensor websocket endpoint.

    Use as an async context manager so the connection is initialized and
    closed around a batch of reads::

        async with SubtensorChainReader() as reader:
            report = await compute_balances(owner, reader)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        substrate: Optional[AsyncSubstrateInterface] = None,
    ):
        self.url = url or get_settings().subtensor_url
        self.substrate = substrate or AsyncSubstrateInterface(
            url=self.url,
            ss58_format=SS58_FORMAT,
            chain_name="Bittensor",
        )

    async def __aenter__(self):
        logger.debug("Connecting to Subtensor", url=self.url)
        await self.substrate.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.substrate.close()

    async def _query(self, storage_function: str, params: list) -> Any:
        try:
            result = await self.substrate.query(MODULE, storage_function, params)
        except (SubstrateRequestException, ConnectionError, TimeoutError) as e:
            raise ChainReadError(
                f"{storage_function}{params} failed: {e}",
                storage_function=storage_function,
            ) from e
        return _unwrap(result)

    async def staking_hotkeys(self, coldkey: str) -> List[str]:
        result = await self._query("StakingHotkeys", [coldkey])
        return [decode_account_id(hotkey) for hotkey in (result or [])]

    async def alpha_entries(self, hotkey: str, coldkey: str) -> List[Tuple[int, Any]]:
        """All (netuid, alpha share) entries for a hotkey/coldkey pair."""
        try:
            query = await self.substrate.query_map(
                module=MODULE,
                storage_function="Alpha",
                params=[hotkey, coldkey],
            )
            entries = []
            async for netuid, share in query:
                entries.append((int(_unwrap(netuid)), _unwrap(share)))
        except (SubstrateRequestException, ConnectionError, TimeoutError) as e:
            raise ChainReadError(f"Alpha[{hotkey}, {coldkey}] failed: {e}", storage_function="Alpha") from e
        return entries

    async def total_hotkey_alpha(self, hotkey: str, netuid: int) -> int:
        return int(await self._query("TotalHotkeyAlpha", [hotkey, netuid]) or 0)

    async def total_hotkey_shares(self, hotkey: str, netuid: int) -> Any:
        return await self._query("TotalHotkeyShares", [hotkey, netuid])

    async def subnet_tao(self, netuid: int) -> int:
        return int(await self._query("SubnetTAO", [netuid]) or 0)

    async def subnet_alpha_in(self, netuid: int) -> int:
        return int(await self._query("SubnetAlphaIn", [netuid]) or 0)
