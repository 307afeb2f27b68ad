"""
Request signing for DeedFlow.

Callers identify themselves with a secp256k1 key.  The API accepts a
POST body only if its ``signature`` verifies against ``public_key`` and
that key derives to the ``account`` named in the body.

    signer = Signer.from_seed("seller")
    body = signer.sign_request({"token_id": 1})
    # -> {"token_id": 1, "nonce": 1, "account": "0x...", "public_key": "04...",
    #     "signature": "..."}

Every request carries a per-account ``nonce`` that must exceed the last one
the node accepted, so a captured body cannot be replayed.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.errors import MalformedPointError

SIGNATURE_FIELDS = ("signature",)


def address_from_public_key(public_key: bytes) -> str:
    """``0x`` + the last 20 bytes of SHA3-256 over the raw point."""
    if len(public_key) == 65 and public_key[0] == 0x04:
        public_key = public_key[1:]
    return "0x" + hashlib.sha3_256(public_key).hexdigest()[-40:]


def canonical_payload(payload: dict[str, Any]) -> bytes:
    """Stable byte encoding of a request body, minus the signature."""
    body = {k: v for k, v in payload.items() if k not in SIGNATURE_FIELDS}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_payload(private_key: bytes, payload: dict[str, Any]) -> str:
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    sig = sk.sign_deterministic(canonical_payload(payload), hashfunc=hashlib.sha256)
    return sig.hex()


def verify_payload(public_key: bytes, payload: dict[str, Any], signature: str) -> bool:
    """Return True if *signature* (hex) is valid for *payload*."""
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        return vk.verify(
            bytes.fromhex(signature),
            canonical_payload(payload),
            hashfunc=hashlib.sha256,
        )
    except (BadSignatureError, MalformedPointError, ValueError):
        return False


class Signer:
    """A secp256k1 key-pair bound to one address."""

    def __init__(self, private_key: bytes, nonce: int = 0):
        self.private_key = private_key
        self.nonce = nonce    # last nonce handed out
        sk = SigningKey.from_string(private_key, curve=SECP256k1)
        self.public_key = b"\x04" + sk.get_verifying_key().to_string()
        self.address = address_from_public_key(self.public_key)

    @classmethod
    def create(cls) -> Signer:
        return cls(SigningKey.generate(curve=SECP256k1).to_string())

    @classmethod
    def from_seed(cls, seed: str) -> Signer:
        """Deterministic key from a seed string (tests and demos)."""
        return cls(hashlib.sha256(seed.encode("utf-8")).digest())

    def sign_request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *payload* with nonce, account, public key and signature.

        A ``nonce`` already present in *payload* is kept as given.
        """
        body = dict(payload)
        if "nonce" not in body:
            self.nonce += 1
            body["nonce"] = self.nonce
        body["account"] = self.address
        body["public_key"] = self.public_key.hex()
        body["signature"] = sign_payload(self.private_key, body)
        return body

    def __repr__(self) -> str:
        return f"Signer({self.address})"
