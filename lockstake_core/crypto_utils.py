"""
Hashing, key generation and ECDSA signing helpers for LockStake.

secp256k1 keys via ``ecdsa``; RIPEMD-160 via ``pycryptodome`` (hashlib
only exposes it when the linked OpenSSL still ships the legacy provider).

Addresses are ``"x" + hex(RIPEMD160(SHA256(uncompressed_pubkey)))``.
"""

from __future__ import annotations

import hashlib

from Crypto.Hash import RIPEMD160
from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigdecode_der, sigencode_der

ADDRESS_PREFIX = "x"


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(sha256(data)).digest()


def generate_keypair() -> tuple[bytes, bytes]:
    """Return ``(private_key_32, public_key_65_uncompressed)``."""
    sk = SigningKey.generate(curve=SECP256k1)
    return sk.to_string(), public_key_from_private(sk.to_string())


def public_key_from_private(private_key: bytes) -> bytes:
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return b"\x04" + sk.get_verifying_key().to_string()


def derive_address(public_key: bytes) -> str:
    return ADDRESS_PREFIX + hash160(public_key).hex()


def is_valid_address(address: str) -> bool:
    if not isinstance(address, str) or not address.startswith(ADDRESS_PREFIX):
        return False
    body = address[len(ADDRESS_PREFIX):]
    if len(body) != 40:
        return False
    try:
        bytes.fromhex(body)
    except ValueError:
        return False
    return True


def sign(private_key: bytes, msg_hash: bytes) -> bytes:
    """Deterministic (RFC 6979) DER signature over a 32-byte digest."""
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    return sk.sign_digest_deterministic(
        msg_hash, hashfunc=hashlib.sha256, sigencode=sigencode_der,
    )


def verify(public_key: bytes, msg_hash: bytes, signature: bytes) -> bool:
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify_digest(signature, msg_hash, sigdecode=sigdecode_der)
    except (BadSignatureError, UnexpectedDER, ValueError, AssertionError):
        return False
