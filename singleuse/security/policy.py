"""Canonical policy strings and signed-URL layout.

URLs follow the CloudFront canned-policy shape so the same links work with a
CloudFront key pair or with the HMAC scheme:

    <base>/<resource_path>?id=<grant_id>&Expires=<epoch>&Signature=<sig>&Key-Pair-Id=<kid>

The signed policy covers the resource URL (which embeds the grant id) and the
expiry, so none of id, path or expiry can change without breaking the
signature.
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

ID_PARAM = "id"
EXPIRES_PARAM = "Expires"
SIGNATURE_PARAM = "Signature"
KEY_ID_PARAM = "Key-Pair-Id"

_REQUIRED_PARAMS = (ID_PARAM, EXPIRES_PARAM, SIGNATURE_PARAM, KEY_ID_PARAM)

# CloudFront-safe base64 alphabet substitutions
_TO_SAFE = str.maketrans({"+": "-", "=": "_", "/": "~"})
_FROM_SAFE = str.maketrans({"-": "+", "_": "=", "~": "/"})


class MalformedUrlError(ValueError):
    """The URL is missing signed fields or carries them in a non-canonical form."""


def encode_signature(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii").translate(_TO_SAFE)


def decode_signature(value: str) -> bytes:
    return base64.b64decode(value.translate(_FROM_SAFE), validate=True)


def normalize_resource_path(resource_path: str) -> str:
    """Issuer-side cleanup of caller input. Never applied to incoming requests."""
    return (resource_path or "").strip().lstrip("/")


def quote_resource_path(resource_path: str) -> str:
    return quote(resource_path, safe="/")


def resource_url(base_url: str, resource_path: str, grant_id: str) -> str:
    """URL the policy is signed over: everything except the signature fields."""
    path = quote_resource_path(resource_path)
    return f"{base_url.rstrip('/')}/{path}?{urlencode({ID_PARAM: grant_id})}"


def canonical_policy(base_url: str, resource_path: str, grant_id: str, expires_at: int) -> str:
    policy = {
        "Statement": [
            {
                "Resource": resource_url(base_url, resource_path, grant_id),
                "Condition": {"DateLessThan": {"AWS:EpochTime": int(expires_at)}},
            }
        ]
    }
    return json.dumps(policy, separators=(",", ":"))


def compose_signed_url(
    base_url: str,
    resource_path: str,
    grant_id: str,
    expires_at: int,
    signature: str,
    key_id: str,
) -> str:
    tail = urlencode(
        {
            EXPIRES_PARAM: int(expires_at),
            SIGNATURE_PARAM: signature,
            KEY_ID_PARAM: key_id,
        }
    )
    return f"{resource_url(base_url, resource_path, grant_id)}&{tail}"


@dataclass(frozen=True)
class SignedFields:
    """Fields recovered from an incoming URL, ready for verification."""

    grant_id: str
    resource_path: str
    expires_at: int
    signature: str
    key_id: str

    def policy(self, base_url: str) -> str:
        return canonical_policy(
            base_url, self.resource_path, self.grant_id, self.expires_at
        )


def _parse_resource_path(path: str) -> str:
    # Exactly one leading slash, then the path exactly as the issuer quoted it
    if not path or not path.startswith("/") or path.startswith("//"):
        raise MalformedUrlError("path must start with a single /")
    raw = path[1:]
    if not raw:
        raise MalformedUrlError("missing resource path")
    resource_path = unquote(raw)
    if quote_resource_path(resource_path) != raw:
        raise MalformedUrlError("resource path is not canonically encoded")
    return resource_path


def parse_signed_url(path: str, query: str) -> SignedFields:
    """Recover signed fields from a request path and raw query string.

    The path must be exactly the one the issuer composed: a single leading
    slash and the resource path quoted with ``quote(path, safe="/")``. Raises
    MalformedUrlError otherwise, when a field is missing, repeated, empty or of
    the wrong type, or when the query carries parameters that were never signed.
    """
    resource_path = _parse_resource_path(path)

    try:
        params = parse_qs(query or "", keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        raise MalformedUrlError(f"unparseable query string: {e}") from e

    unexpected = sorted(set(params) - set(_REQUIRED_PARAMS))
    if unexpected:
        raise MalformedUrlError(f"unexpected parameters: {', '.join(unexpected)}")

    values = {}
    for name in _REQUIRED_PARAMS:
        found = params.get(name) or []
        if len(found) != 1 or not found[0]:
            raise MalformedUrlError(f"missing or repeated parameter: {name}")
        values[name] = found[0]

    expires_raw = values[EXPIRES_PARAM]
    if not (expires_raw.isascii() and expires_raw.isdigit()):
        raise MalformedUrlError("Expires must be an integer epoch")

    return SignedFields(
        grant_id=values[ID_PARAM],
        resource_path=resource_path,
        expires_at=int(expires_raw),
        signature=values[SIGNATURE_PARAM],
        key_id=values[KEY_ID_PARAM],
    )


def split_url(url: str) -> tuple[str, str]:
    """Return ``(path, query)`` of an absolute or relative URL."""
    parts = urlsplit(url or "")
    return parts.path, parts.query
