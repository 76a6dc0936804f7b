"""Two generations of authenticated encryption for UTXO outputs.

v1 (legacy)  IV(16) || tag(16) || body       AES-128-CTR + truncated HMAC-SHA256
v2 (current) 00*7 02 || IV(12) || tag(16) || body   AES-256-GCM

Both must stay decryptable from the same signature forever, so the legacy
path is still fully supported. Records select their generation with the
8-byte prefix; anything without it is read as v1.
"""
from __future__ import annotations

import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from services.crypto_core.errors import DecryptionMismatch, KeyNotDerived
from services.crypto_core.keys import DerivedKeys, SpendingKeypair, Version, derive_keys
from services.crypto_core.utxo import Utxo

V2_TAG = bytes([0, 0, 0, 0, 0, 0, 0, 2])
V1_IV_LEN = 16
V2_IV_LEN = 12
AUTH_TAG_LEN = 16


@dataclass(frozen=True)
class CiphertextV1:
    iv: bytes
    tag: bytes
    body: bytes

    version = "v1"

    def to_bytes(self) -> bytes:
        return self.iv + self.tag + self.body


@dataclass(frozen=True)
class CiphertextV2:
    iv: bytes
    tag: bytes
    body: bytes

    version = "v2"

    def to_bytes(self) -> bytes:
        return V2_TAG + self.iv + self.tag + self.body


Ciphertext = Union[CiphertextV1, CiphertextV2]


def parse_ciphertext(data: bytes) -> Ciphertext:
    if data[: len(V2_TAG)] == V2_TAG:
        rest = data[len(V2_TAG):]
        if len(rest) < V2_IV_LEN + AUTH_TAG_LEN:
            raise DecryptionMismatch("truncated v2 record")
        return CiphertextV2(
            iv=rest[:V2_IV_LEN],
            tag=rest[V2_IV_LEN:V2_IV_LEN + AUTH_TAG_LEN],
            body=rest[V2_IV_LEN + AUTH_TAG_LEN:],
        )
    if len(data) < V1_IV_LEN + AUTH_TAG_LEN:
        raise DecryptionMismatch("truncated v1 record")
    return CiphertextV1(
        iv=data[:V1_IV_LEN],
        tag=data[V1_IV_LEN:V1_IV_LEN + AUTH_TAG_LEN],
        body=data[V1_IV_LEN + AUTH_TAG_LEN:],
    )


def ciphertext_version(data: bytes) -> Version:
    return "v2" if data[: len(V2_TAG)] == V2_TAG else "v1"


def _v1_tag(key_v1: bytes, iv: bytes, body: bytes) -> bytes:
    # HMAC key is bytes 16..31 of the 31-byte legacy key (15 bytes)
    mac = hmac.new(key_v1[16:31], digestmod=hashlib.sha256)
    mac.update(iv)
    mac.update(body)
    return mac.digest()[:AUTH_TAG_LEN]


def _aes_ctr(key: bytes, iv: bytes, data: bytes) -> bytes:
    ctx = Cipher(algorithms.AES(key), modes.CTR(iv)).encryptor()
    return ctx.update(data) + ctx.finalize()


class EncryptionService:
    """Holds the keys derived from one client signature for one request."""

    def __init__(self, keys: Optional[DerivedKeys] = None):
        self._keys = keys

    @classmethod
    def from_signature(cls, signature: bytes) -> "EncryptionService":
        svc = cls()
        svc.derive_from_signature(signature)
        return svc

    def derive_from_signature(self, signature: bytes) -> None:
        self._keys = derive_keys(signature)

    @property
    def keys(self) -> DerivedKeys:
        if self._keys is None:
            raise KeyNotDerived("encryption keys not derived; call derive_from_signature() first")
        return self._keys

    def has_keys(self) -> bool:
        return self._keys is not None

    def keypair(self, version: Version = "v2") -> SpendingKeypair:
        return self.keys.keypair(version)

    # ---------- raw bytes ----------
    def encrypt(self, data: bytes | str, version: Version = "v2") -> bytes:
        if isinstance(data, str):
            data = data.encode("utf-8")
        keys = self.keys
        if version == "v1":
            iv = os.urandom(V1_IV_LEN)
            body = _aes_ctr(keys.encryption_key_v1[:16], iv, data)
            return CiphertextV1(iv=iv, tag=_v1_tag(keys.encryption_key_v1, iv, body), body=body).to_bytes()

        iv = os.urandom(V2_IV_LEN)
        sealed = AESGCM(keys.encryption_key_v2).encrypt(iv, data, None)
        # AESGCM appends the tag; the wire format keeps it before the body
        return CiphertextV2(iv=iv, tag=sealed[-AUTH_TAG_LEN:], body=sealed[:-AUTH_TAG_LEN]).to_bytes()

    def decrypt(self, data: bytes) -> bytes:
        keys = self.keys
        record = parse_ciphertext(bytes(data))
        if isinstance(record, CiphertextV2):
            try:
                return AESGCM(keys.encryption_key_v2).decrypt(record.iv, record.body + record.tag, None)
            except InvalidTag as e:
                raise DecryptionMismatch("v2 authentication failed") from e

        expected = _v1_tag(keys.encryption_key_v1, record.iv, record.body)
        if not hmac.compare_digest(expected, record.tag):
            raise DecryptionMismatch("v1 authentication failed")
        return _aes_ctr(keys.encryption_key_v1[:16], record.iv, record.body)

    # ---------- UTXOs ----------
    def encrypt_utxo(self, utxo: Utxo, version: Version = "v2") -> bytes:
        return self.encrypt(utxo.to_plaintext(), version=version)

    def decrypt_utxo(self, data: bytes | str) -> Utxo:
        raw = bytes.fromhex(data) if isinstance(data, str) else bytes(data)
        version = ciphertext_version(raw)
        plaintext = self.decrypt(raw)
        try:
            return Utxo.from_plaintext(plaintext.decode("utf-8"), keypair=self.keypair(version), version=version)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecryptionMismatch(f"malformed UTXO plaintext: {e}") from e


__all__ = [
    "V2_TAG",
    "CiphertextV1",
    "CiphertextV2",
    "Ciphertext",
    "parse_ciphertext",
    "ciphertext_version",
    "EncryptionService",
]
