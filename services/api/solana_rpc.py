# services/api/solana_rpc.py
from __future__ import annotations

import base64
from typing import Any, List, Optional, Sequence

import httpx
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey

from services.api import config
from services.api.errors import AltNotFound, RemoteProtocolError
from services.api.logging_config import get_logger

logger = get_logger("solana_rpc")

# getMultipleAccounts accepts at most 100 keys per call
MAX_ACCOUNTS_PER_CALL = 100
# Address lookup table account: 56-byte meta header, then 32-byte keys
ALT_HEADER_LEN = 56


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SolanaRPC:
    """The handful of JSON-RPC reads the engine needs."""

    def __init__(
        self,
        rpc_url: str = config.SOLANA_RPC_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.HTTP_TIMEOUT_SEC,
    ):
        self.rpc_url = rpc_url
        self._client = client
        self._timeout = timeout
        self._id = 0

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        try:
            if self._client is not None:
                r = await self._client.post(self.rpc_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    r = await client.post(self.rpc_url, json=payload)
            r.raise_for_status()
            j = r.json()
        except httpx.HTTPStatusError as e:
            raise RemoteProtocolError(e.response.text, status=e.response.status_code, url=self.rpc_url) from e
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteProtocolError(f"RPC {method} failed: {e}", url=self.rpc_url) from e
        if "error" in j:
            raise RemoteProtocolError(f"RPC error {method}: {j['error']}", url=self.rpc_url)
        if "result" not in j:
            raise RemoteProtocolError(f"RPC {method}: response has no result", url=self.rpc_url)
        return j["result"]

    async def accounts_exist(self, addresses: Sequence[str]) -> List[bool]:
        """One flag per address, order preserved; batched under the RPC key limit."""
        flags: List[bool] = []
        for batch in _chunks(list(addresses), MAX_ACCOUNTS_PER_CALL):
            res = await self._rpc("getMultipleAccounts", [list(batch), {"encoding": "base64", "dataSlice": {"offset": 0, "length": 0}}])
            values = res.get("value") or []
            if len(values) != len(batch):
                raise RemoteProtocolError(f"getMultipleAccounts returned {len(values)} entries for {len(batch)} keys")
            flags.extend(v is not None for v in values)
        return flags

    async def get_latest_blockhash(self) -> Hash:
        res = await self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        try:
            return Hash.from_string(res["value"]["blockhash"])
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteProtocolError(f"getLatestBlockhash: unexpected result {res!r}") from e

    async def get_address_lookup_table(self, address: str = config.ALT_ADDRESS) -> AddressLookupTableAccount:
        res = await self._rpc("getAccountInfo", [address, {"encoding": "base64"}])
        value = res.get("value")
        if value is None:
            raise AltNotFound(f"ALT not found at {address}")
        raw = base64.b64decode(value["data"][0])
        body = raw[ALT_HEADER_LEN:]
        if len(raw) < ALT_HEADER_LEN or len(body) % 32:
            raise RemoteProtocolError(f"account {address} is not an address lookup table")
        keys = [Pubkey.from_bytes(body[i:i + 32]) for i in range(0, len(body), 32)]
        logger.debug(f"ALT {address} holds {len(keys)} addresses")
        return AddressLookupTableAccount(key=Pubkey.from_string(address), addresses=keys)


__all__ = ["SolanaRPC", "MAX_ACCOUNTS_PER_CALL", "ALT_HEADER_LEN"]
