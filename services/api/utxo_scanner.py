# services/api/utxo_scanner.py
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from services.api import config
from services.api.logging_config import get_logger
from services.api.relayer import EncryptedLedgerClient
from services.api.solana_rpc import SolanaRPC
from services.api.transaction import spent_markers
from services.crypto_core.encryption import EncryptionService
from services.crypto_core.errors import DecryptionMismatch
from services.crypto_core.utxo import Utxo, total_amount

logger = get_logger("utxo_scanner")


class UtxoScanner:
    """Rebuilds a caller's unspent notes from the relayer's encrypted-output log."""

    def __init__(
        self,
        ledger: EncryptedLedgerClient,
        rpc: SolanaRPC,
        group_size: int = config.FETCH_UTXOS_GROUP_SIZE,
    ):
        self.ledger = ledger
        self.rpc = rpc
        self.group_size = group_size

    async def get_utxos(self, encryption: EncryptionService, token: Optional[str] = None) -> List[Utxo]:
        unspent: List[Utxo] = []
        offset = 0
        scanned = 0
        while True:
            page = await self.ledger.fetch_range(offset, offset + self.group_size, token)
            outputs = page.encrypted_outputs
            if not outputs:
                break
            scanned += len(outputs)

            mine = self._decrypt_page(outputs, encryption)
            candidates = [(enc, u) for enc, u in mine if u.amount > 0]
            if candidates:
                indexed = await self._assign_indices(candidates)
                spent = await self.are_spent(indexed)
                unspent.extend(u for u, s in zip(indexed, spent) if not s)

            if not page.has_more:
                break
            offset += len(outputs)

        logger.debug(f"scanned {scanned} outputs token={token or 'sol'} unspent={len(unspent)}")
        return unspent

    @staticmethod
    def _decrypt_page(outputs: Sequence[str], encryption: EncryptionService) -> List[Tuple[str, Utxo]]:
        mine: List[Tuple[str, Utxo]] = []
        for enc in outputs:
            if not enc:
                continue
            try:
                mine.append((enc, encryption.decrypt_utxo(enc)))
            except (DecryptionMismatch, ValueError):
                # not ours
                continue
        return mine

    async def _assign_indices(self, candidates: Sequence[Tuple[str, Utxo]]) -> List[Utxo]:
        indices = await self.ledger.fetch_indices([enc for enc, _ in candidates])
        out: List[Utxo] = []
        for i, (_, utxo) in enumerate(candidates):
            index = indices[i] if i < len(indices) else None
            if index is None:
                logger.warning("relayer returned no index for a decrypted output; skipping it")
                continue
            utxo.index = int(index)
            out.append(utxo)
        return out

    async def are_spent(self, utxos: Sequence[Utxo]) -> List[bool]:
        """One batched lookup of both nullifier accounts per note."""
        if not utxos:
            return []
        addresses: List[str] = []
        for u in utxos:
            addresses.extend(str(pda) for pda in spent_markers(u.nullifier()))
        exists = await self.rpc.accounts_exist(addresses)
        return [exists[2 * i] or exists[2 * i + 1] for i in range(len(utxos))]

    async def get_balance(self, encryption: EncryptionService, token: Optional[str] = None) -> Tuple[int, List[Utxo]]:
        utxos = await self.get_utxos(encryption, token)
        return total_amount(utxos), utxos


__all__ = ["UtxoScanner"]
