import pytest

from conftest import make_wallet
from services.crypto_core.encryption import (
    V2_TAG,
    CiphertextV1,
    CiphertextV2,
    EncryptionService,
    ciphertext_version,
    parse_ciphertext,
)
from services.crypto_core.errors import DecryptionMismatch, KeyNotDerived
from services.crypto_core.utxo import Utxo


def _flip(data: bytes, pos: int) -> bytes:
    b = bytearray(data)
    b[pos] ^= 0x01
    return bytes(b)


def test_requires_derivation():
    svc = EncryptionService()
    assert not svc.has_keys()
    with pytest.raises(KeyNotDerived):
        svc.encrypt(b"x")
    with pytest.raises(KeyNotDerived):
        svc.decrypt(b"\x00" * 40)
    with pytest.raises(KeyNotDerived):
        svc.keypair("v2")


def test_v2_round_trip_and_layout(enc):
    ct = enc.encrypt(b"hello world")
    assert ct.startswith(V2_TAG)
    assert len(ct) == 8 + 12 + 16 + len(b"hello world")
    assert isinstance(parse_ciphertext(ct), CiphertextV2)
    assert enc.decrypt(ct) == b"hello world"


def test_v1_round_trip_and_layout(enc):
    ct = enc.encrypt("legacy", version="v1")
    assert len(ct) == 16 + 16 + len(b"legacy")
    assert isinstance(parse_ciphertext(ct), CiphertextV1)
    assert ciphertext_version(ct) == "v1"
    assert enc.decrypt(ct) == b"legacy"


@pytest.mark.parametrize("version", ["v1", "v2"])
def test_any_altered_byte_fails(enc, version):
    ct = enc.encrypt(b"amount|blinding|index|mint", version=version)
    for pos in (len(ct) - 1, len(ct) // 2, 20):
        with pytest.raises(DecryptionMismatch):
            enc.decrypt(_flip(ct, pos))


@pytest.mark.parametrize("version", ["v1", "v2"])
def test_foreign_keys_cannot_decrypt(enc, version):
    other = EncryptionService.from_signature(make_wallet(3)[2])
    ct = enc.encrypt(b"secret", version=version)
    with pytest.raises(DecryptionMismatch):
        other.decrypt(ct)


def test_truncated_records_fail(enc):
    with pytest.raises(DecryptionMismatch):
        enc.decrypt(V2_TAG + b"\x00" * 10)
    with pytest.raises(DecryptionMismatch):
        enc.decrypt(b"\x01" * 20)


@pytest.mark.parametrize("version", ["v1", "v2"])
def test_utxo_round_trip_keeps_generation(enc, version):
    utxo = Utxo(keypair=enc.keypair(version), amount=1_000_000_000, index=17, version=version)
    ct = enc.encrypt_utxo(utxo, version=version)
    back = enc.decrypt_utxo(ct.hex())
    assert back.amount == utxo.amount
    assert back.blinding == utxo.blinding
    assert back.index == 17
    assert back.mint == utxo.mint
    assert back.version == version
    assert back.keypair == enc.keypair(version)
    assert back.commitment() == utxo.commitment()


def test_garbage_plaintext_is_a_mismatch(enc):
    with pytest.raises(DecryptionMismatch):
        enc.decrypt_utxo(enc.encrypt(b"not a utxo"))
