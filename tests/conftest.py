from __future__ import annotations

import base64
from typing import Dict, List, Optional, Set

import pytest
from nacl.signing import SigningKey
from solders.address_lookup_table_account import AddressLookupTableAccount
from solders.hash import Hash
from solders.pubkey import Pubkey

from services.api.errors import RemoteProtocolError
from services.api.schemas_api import FeeConfig, LedgerPage, MerklePath, RelayResult, TreeState
from services.crypto_core.encryption import EncryptionService
from services.crypto_core.keys import SIGN_IN_MESSAGE
from services.crypto_core.merkle import MERKLE_TREE_DEPTH, empty_root


def make_wallet(seed: int = 7):
    sk = SigningKey(bytes([seed]) * 32)
    public_key = str(Pubkey.from_bytes(bytes(sk.verify_key)))
    signature = sk.sign(SIGN_IN_MESSAGE).signature
    return sk, public_key, signature


@pytest.fixture
def wallet():
    return make_wallet()


@pytest.fixture
def signature_b64(wallet) -> str:
    return base64.b64encode(wallet[2]).decode()


@pytest.fixture
def public_key(wallet) -> str:
    return wallet[1]


@pytest.fixture
def enc(wallet) -> EncryptionService:
    return EncryptionService.from_signature(wallet[2])


# ===== test doubles =====
class FakeTree:
    def __init__(self, next_index: int = 10):
        self.next_index = next_index
        self.root = str(empty_root())
        self.state_calls: List[Optional[str]] = []
        self.proof_calls: List[tuple] = []

    async def query_tree_state(self, token: Optional[str] = None) -> TreeState:
        self.state_calls.append(token)
        return TreeState(root=self.root, nextIndex=self.next_index)

    async def fetch_merkle_proof(self, commitment, token: Optional[str] = None) -> MerklePath:
        self.proof_calls.append((str(commitment), token))
        return MerklePath(pathElements=[str(i + 1) for i in range(MERKLE_TREE_DEPTH)], pathIndices=[0] * MERKLE_TREE_DEPTH)


class FakeLedger:
    """Encrypted-output log held in memory; `index_of` maps ciphertext -> tree index."""

    def __init__(self, outputs: Optional[List[str]] = None, index_of: Optional[Dict[str, int]] = None):
        self.outputs = list(outputs or [])
        self.index_of = dict(index_of or {})
        self.range_calls: List[tuple] = []
        self.index_calls: List[List[str]] = []
        self.exists_calls: List[tuple] = []
        self.exists_result = True
        self.fail_tokens: Set[str] = set()
        self.exists_error: Optional[Exception] = None

    async def fetch_range(self, start: int, end: int, token: Optional[str] = None) -> LedgerPage:
        self.range_calls.append((start, end, token))
        if token in self.fail_tokens:
            raise RemoteProtocolError("tree unavailable", status=503)
        return LedgerPage(
            encrypted_outputs=self.outputs[start:end],
            hasMore=end < len(self.outputs),
            total=len(self.outputs),
        )

    async def fetch_indices(self, encrypted_outputs: List[str]) -> List[Optional[int]]:
        self.index_calls.append(list(encrypted_outputs))
        return [self.index_of.get(e) for e in encrypted_outputs]

    async def exists(self, encrypted_output_hex: str, token: Optional[str] = None) -> bool:
        self.exists_calls.append((encrypted_output_hex, token))
        if self.exists_error is not None:
            raise self.exists_error
        return self.exists_result


class FakeRelay:
    def __init__(self, fee_config: Optional[FeeConfig] = None):
        self.fee_config = fee_config or FeeConfig(withdraw_fee_rate=0, withdraw_rent_fee=0)
        self.deposits: List[dict] = []
        self.withdrawals: List = []

    async def get_fee_config(self) -> FeeConfig:
        return self.fee_config

    async def relay_deposit(self, signed_transaction, sender_address, referrer=None, mint_address=None):
        self.deposits.append(dict(
            signed_transaction=signed_transaction,
            sender_address=sender_address,
            referrer=referrer,
            mint_address=mint_address,
        ))
        return RelayResult(signature="deposit-sig", success=True)

    async def relay_withdraw(self, params):
        self.withdrawals.append(params)
        return RelayResult(signature="withdraw-sig", success=True)


class FakeRelayer:
    def __init__(self, tree=None, ledger=None, relay=None):
        self.tree = tree or FakeTree()
        self.ledger = ledger or FakeLedger()
        self.relay = relay or FakeRelay()


class FakeRPC:
    def __init__(self, spent: Optional[Set[str]] = None):
        self.spent = set(spent or ())
        self.exist_calls: List[List[str]] = []
        self.alt = AddressLookupTableAccount(key=Pubkey.new_unique(), addresses=[])

    async def accounts_exist(self, addresses):
        self.exist_calls.append(list(addresses))
        return [a in self.spent for a in addresses]

    async def get_address_lookup_table(self, address=None):
        return self.alt

    async def get_latest_blockhash(self):
        return Hash.default()


class FakeProver:
    """Deterministic prover: echoes the circuit's public inputs as signals."""

    def __init__(self, fail: Optional[Exception] = None):
        self.calls: List[dict] = []
        self.fail = fail

    def prove(self, inputs):
        self.calls.append(inputs)
        if self.fail is not None:
            raise self.fail
        proof = {
            "pi_a": ["1", "2", "1"],
            "pi_b": [["3", "4"], ["5", "6"], ["1", "0"]],
            "pi_c": ["7", "8", "1"],
            "protocol": "groth16",
        }
        signals = [
            inputs["root"],
            inputs["publicAmount"],
            inputs["extDataHash"],
            *inputs["inputNullifier"],
            *inputs["outputCommitment"],
        ]
        return proof, signals
