"""Signer and verifier implementations for canonical policies.

Two schemes are supported:

- ``hmac``: HMAC-SHA256 with a shared secret. Default; needs no key pair.
- ``rsa``: RSA PKCS#1 v1.5 over SHA-1, the CloudFront canned-policy scheme.

Both encode signatures with the CloudFront-safe base64 alphabet and look keys
up by key id, so keys can be rotated by publishing the new key id alongside
the old one on the verifying side.
"""
from __future__ import annotations

import hmac
from hashlib import sha256
from pathlib import Path
from typing import Mapping, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from singleuse.security.policy import decode_signature, encode_signature


class Signer(Protocol):
    key_id: str

    def sign(self, policy: str) -> str:
        ...


class Verifier(Protocol):
    def verify(self, policy: str, signature: str, key_id: str) -> bool:
        ...


def _as_bytes(value) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


class HmacSigner:
    def __init__(self, secret, key_id: str = "default"):
        if not secret:
            raise ValueError("HMAC signing secret must not be empty")
        self._secret = _as_bytes(secret)
        self.key_id = key_id

    def sign(self, policy: str) -> str:
        digest = hmac.new(self._secret, policy.encode("utf-8"), sha256).digest()
        return encode_signature(digest)


class HmacVerifier:
    def __init__(self, keys: Mapping[str, object]):
        self._keys = {kid: _as_bytes(secret) for kid, secret in keys.items() if secret}

    def verify(self, policy: str, signature: str, key_id: str) -> bool:
        secret = self._keys.get(key_id)
        if secret is None:
            return False
        try:
            provided = decode_signature(signature)
        except ValueError:
            return False
        expected = hmac.new(secret, policy.encode("utf-8"), sha256).digest()
        # Constant-time compare
        return hmac.compare_digest(provided, expected)


class RsaSigner:
    def __init__(self, private_key, key_id: str):
        self._private_key = private_key
        self.key_id = key_id

    @classmethod
    def from_pem(cls, pem, key_id: str, password: bytes | None = None) -> RsaSigner:
        key = serialization.load_pem_private_key(_as_bytes(pem), password=password)
        return cls(key, key_id)

    def sign(self, policy: str) -> str:
        raw = self._private_key.sign(
            policy.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1()
        )
        return encode_signature(raw)


class RsaVerifier:
    def __init__(self, public_keys: Mapping[str, object]):
        self._keys = dict(public_keys)

    @classmethod
    def from_pem(cls, pem, key_id: str) -> RsaVerifier:
        return cls({key_id: serialization.load_pem_public_key(_as_bytes(pem))})

    def verify(self, policy: str, signature: str, key_id: str) -> bool:
        public_key = self._keys.get(key_id)
        if public_key is None:
            return False
        try:
            raw = decode_signature(signature)
            public_key.verify(
                raw, policy.encode("utf-8"), padding.PKCS1v15(), hashes.SHA1()
            )
        except (InvalidSignature, ValueError):
            return False
        return True


def _hmac_secret(config) -> str:
    # Prefer dedicated signing key; fallback to Flask SECRET_KEY
    key = config.get("URL_SIGNING_KEY") or config.get("SECRET_KEY")
    if not key:
        raise RuntimeError("No URL signing key configured")
    return str(key)


def _read_pem(path: str | None, setting: str) -> bytes:
    if not path:
        raise RuntimeError(f"{setting} must be set when URL_SIGNING_SCHEME=rsa")
    return Path(path).read_bytes()


def signer_from_config(config) -> Signer:
    scheme = str(config.get("URL_SIGNING_SCHEME", "hmac")).lower()
    key_id = str(config.get("URL_SIGNING_KEY_ID") or "default")
    if scheme == "hmac":
        return HmacSigner(_hmac_secret(config), key_id)
    if scheme == "rsa":
        pem = _read_pem(
            config.get("URL_SIGNING_PRIVATE_KEY_PATH"), "URL_SIGNING_PRIVATE_KEY_PATH"
        )
        return RsaSigner.from_pem(pem, key_id)
    raise RuntimeError(f"Unknown URL_SIGNING_SCHEME: {scheme}")


def verifier_from_config(config) -> Verifier:
    scheme = str(config.get("URL_SIGNING_SCHEME", "hmac")).lower()
    key_id = str(config.get("URL_SIGNING_KEY_ID") or "default")
    if scheme == "hmac":
        return HmacVerifier({key_id: _hmac_secret(config)})
    if scheme == "rsa":
        pem = _read_pem(
            config.get("URL_SIGNING_PUBLIC_KEY_PATH"), "URL_SIGNING_PUBLIC_KEY_PATH"
        )
        return RsaVerifier.from_pem(pem, key_id)
    raise RuntimeError(f"Unknown URL_SIGNING_SCHEME: {scheme}")
