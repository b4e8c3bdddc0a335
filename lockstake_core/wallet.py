"""
Wallet management for LockStake.

A wallet wraps a secp256k1 key-pair and provides:
  - Address derivation
  - Signing of API request payloads (canonical JSON, SHA-256 digest)
  - Signature verification for the REST layer
  - Serialisable import / export (encrypted with passphrase)
"""

from __future__ import annotations

import hashlib
import json
import os
import time
from typing import Any

from lockstake_core.crypto_utils import (
    derive_address,
    generate_keypair,
    public_key_from_private,
    sha256,
    sign,
    verify,
)

KDF_ITERATIONS = 600_000


def canonical_json(payload: dict[str, Any]) -> bytes:
    """Byte-exact encoding used for signing: sorted keys, no whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def payload_digest(payload: dict[str, Any]) -> bytes:
    return sha256(canonical_json(payload))


def verify_payload(payload: dict[str, Any], public_key: bytes, signature: bytes) -> bool:
    """True if *signature* over *payload* was made by *public_key*'s owner."""
    return verify(public_key, payload_digest(payload), signature)


class Wallet:
    """A signing identity on the staking service."""

    def __init__(self, private_key: bytes, public_key: bytes | None = None,
                 address: str | None = None):
        self.private_key = private_key
        self.public_key = public_key or public_key_from_private(private_key)
        self.address = address or derive_address(self.public_key)
        self._nonce = 0

    # ---- constructors ----

    @classmethod
    def create(cls) -> Wallet:
        """Generate a brand-new random wallet."""
        priv, pub = generate_keypair()
        return cls(priv, pub)

    @classmethod
    def from_seed(cls, seed: str) -> Wallet:
        """
        Derive a wallet deterministically from a seed phrase.

        PBKDF2-HMAC-SHA256 with 600 000 iterations and a fixed salt.
        """
        priv = hashlib.pbkdf2_hmac(
            "sha256", seed.encode("utf-8"), b"LockStake/seed/v1", KDF_ITERATIONS,
        )
        return cls(priv)

    # ---- signing ----

    def next_nonce(self) -> int:
        # millisecond clock keeps nonces increasing across restarts
        self._nonce = max(self._nonce + 1, int(time.time() * 1000))
        return self._nonce

    def sign_payload(self, payload: dict[str, Any]) -> bytes:
        return sign(self.private_key, payload_digest(payload))

    def signed_request(self, **fields: Any) -> dict[str, Any]:
        """
        Build a signed request envelope for the REST API.

        A fresh nonce is added to *fields* unless one is given.
        """
        payload = dict(fields)
        payload.setdefault("nonce", self.next_nonce())
        return {
            "payload": payload,
            "public_key": self.public_key.hex(),
            "signature": self.sign_payload(payload).hex(),
        }

    # ---- export / import ----

    def to_dict(self) -> dict:
        """Public fields only."""
        return {"address": self.address, "public_key": self.public_key.hex()}

    def export_encrypted(self, passphrase: str) -> dict:
        """
        Export wallet as an encrypted JSON-compatible dict.

        AES-256-GCM authenticated encryption, PBKDF2-HMAC-SHA256 key.
        """
        salt = os.urandom(16)
        key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, KDF_ITERATIONS)
        enc_priv, nonce, tag = self._aes_gcm_encrypt(key, self.private_key)
        return {
            "version": 1,
            "address": self.address,
            "public_key": self.public_key.hex(),
            "encrypted_private_key": enc_priv.hex(),
            "nonce": nonce.hex(),
            "tag": tag.hex(),
            "salt": salt.hex(),
            "kdf": "pbkdf2-hmac-sha256",
            "kdf_iterations": KDF_ITERATIONS,
        }

    @classmethod
    def import_encrypted(cls, data: dict, passphrase: str) -> Wallet:
        """Decrypt an export.  Raises ValueError on a wrong passphrase or tamper."""
        iterations = data.get("kdf_iterations", KDF_ITERATIONS)
        key = hashlib.pbkdf2_hmac(
            "sha256", passphrase.encode("utf-8"), bytes.fromhex(data["salt"]), iterations,
        )
        priv = cls._aes_gcm_decrypt(
            key,
            bytes.fromhex(data["nonce"]),
            bytes.fromhex(data["encrypted_private_key"]),
            bytes.fromhex(data["tag"]),
        )
        wallet = cls(priv)
        if wallet.address != data.get("address", wallet.address):
            raise ValueError("Decrypted key does not match stored address")
        return wallet

    # ---- AES-256-GCM authenticated encryption ----

    @staticmethod
    def _aes_gcm_encrypt(key: bytes, data: bytes) -> tuple[bytes, bytes, bytes]:
        """Encrypt *data* with AES-256-GCM. Returns (ciphertext, nonce, tag)."""
        from Crypto.Cipher import AES
        nonce = os.urandom(12)
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(data)
        return ciphertext, nonce, tag

    @staticmethod
    def _aes_gcm_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes) -> bytes:
        """Decrypt and verify AES-256-GCM ciphertext. Raises ValueError on tamper."""
        from Crypto.Cipher import AES
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        return cipher.decrypt_and_verify(ciphertext, tag)

    def __repr__(self) -> str:
        return f"Wallet({self.address})"
