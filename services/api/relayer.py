# services/api/relayer.py
"""
Async clients for the Privacy Cash relayer.

TreeOracleClient      Merkle root / paths (per-asset trees via ?token=)
EncryptedLedgerClient encrypted-output log: pages, index lookup, existence
RelayClient           fee schedule and relay of deposits / withdrawals

All three share one httpx plumbing layer that turns non-2xx answers and
malformed bodies into RemoteProtocolError with the remote text preserved.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from services.api import config
from services.api.errors import RemoteProtocolError
from services.api.logging_config import get_logger
from services.api.schemas_api import (
    ExistsRes,
    FeeConfig,
    LedgerPage,
    MerklePath,
    RelayResult,
    TreeState,
    UtxoIndices,
    WithdrawParams,
)
from services.crypto_core.merkle import MERKLE_TREE_DEPTH

logger = get_logger("relayer")

M = TypeVar("M", bound=BaseModel)


def _token_params(token: Optional[str], **extra: Any) -> Dict[str, Any]:
    params = {k: v for k, v in extra.items() if v is not None}
    if token:
        params["token"] = token
    return params


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return resp.text


class RelayerHTTP:
    """Thin JSON-over-HTTP layer; pass `client` to share a pool or inject a transport."""

    def __init__(
        self,
        base_url: str = config.RELAYER_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.HTTP_TIMEOUT_SEC,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    async def _send(self, method: str, path: str, **kw) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, **kw)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(method, url, **kw)
        except httpx.HTTPError as e:
            logger.error(f"{method} {url} failed: {e}")
            raise RemoteProtocolError(str(e), url=url) from e

        if resp.status_code // 100 != 2:
            text = _error_text(resp)
            logger.error(f"{method} {url} -> {resp.status_code}: {text[:200]}")
            raise RemoteProtocolError(text, status=resp.status_code, url=url)
        return resp

    async def _json(self, model: Type[M], method: str, path: str, **kw) -> M:
        resp = await self._send(method, path, **kw)
        try:
            return model.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise RemoteProtocolError(
                f"unexpected {model.__name__} body: {resp.text[:200]}",
                status=resp.status_code,
                url=str(resp.request.url),
            ) from e


class TreeOracleClient(RelayerHTTP):
    async def query_tree_state(self, token: Optional[str] = None) -> TreeState:
        state = await self._json(TreeState, "GET", "/merkle/root", params=_token_params(token))
        logger.debug(f"tree state token={token or 'sol'} nextIndex={state.next_index}")
        return state

    async def fetch_merkle_proof(self, commitment: int | str, token: Optional[str] = None) -> MerklePath:
        path = await self._json(MerklePath, "GET", f"/merkle/proof/{commitment}", params=_token_params(token))
        if len(path.path_elements) != MERKLE_TREE_DEPTH:
            raise RemoteProtocolError(
                f"merkle path has {len(path.path_elements)} elements, expected {MERKLE_TREE_DEPTH}"
            )
        return path


class EncryptedLedgerClient(RelayerHTTP):
    async def fetch_range(self, start: int, end: int, token: Optional[str] = None) -> LedgerPage:
        return await self._json(LedgerPage, "GET", "/utxos/range", params=_token_params(token, start=start, end=end))

    async def fetch_indices(self, encrypted_outputs: List[str]) -> List[Optional[int]]:
        res = await self._json(
            UtxoIndices, "POST", "/utxos/indices", json={"encrypted_outputs": list(encrypted_outputs)}
        )
        return res.indices

    async def exists(self, encrypted_output_hex: str, token: Optional[str] = None) -> bool:
        res = await self._json(ExistsRes, "GET", f"/utxos/check/{encrypted_output_hex}", params=_token_params(token))
        return res.exists


class RelayClient(RelayerHTTP):
    def __init__(self, *args, **kw):
        super().__init__(*args, **kw)
        self._fee_config: Optional[FeeConfig] = None

    async def get_fee_config(self) -> FeeConfig:
        # fetched once; concurrent first reads store equal values
        if self._fee_config is None:
            self._fee_config = await self._json(FeeConfig, "GET", "/config")
        return self._fee_config

    async def relay_deposit(
        self,
        signed_transaction: str,
        sender_address: str,
        referrer: Optional[str] = None,
        mint_address: Optional[str] = None,
    ) -> RelayResult:
        body: Dict[str, Any] = {"signedTransaction": signed_transaction, "senderAddress": sender_address}
        if referrer:
            body["referralWalletAddress"] = referrer
        if mint_address:
            body["mintAddress"] = mint_address
        path = "/deposit/spl" if mint_address else "/deposit"
        result = await self._json(RelayResult, "POST", path, json=body)
        logger.info(f"deposit relayed sig={result.signature}")
        return result

    async def relay_withdraw(self, params: WithdrawParams) -> RelayResult:
        path = "/withdraw/spl" if params.is_spl else "/withdraw"
        result = await self._json(RelayResult, "POST", path, json=params.to_wire())
        logger.info(f"withdrawal relayed sig={result.signature}")
        return result


class RelayerClients:
    """The three relayer roles over one shared connection pool."""

    def __init__(self, base_url: str = config.RELAYER_URL, client: Optional[httpx.AsyncClient] = None):
        self.tree = TreeOracleClient(base_url, client=client)
        self.ledger = EncryptedLedgerClient(base_url, client=client)
        self.relay = RelayClient(base_url, client=client)


__all__ = [
    "RelayerHTTP",
    "TreeOracleClient",
    "EncryptedLedgerClient",
    "RelayClient",
    "RelayerClients",
]
