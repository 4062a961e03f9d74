"""Security helpers package (policy strings, signed URLs, signers).

Exposes the canonical policy and URL layout used by the issuer and validator,
and the pluggable signer/verifier implementations.
"""

from .policy import (
    MalformedUrlError,
    SignedFields,
    canonical_policy,
    compose_signed_url,
    parse_signed_url,
)
from .signers import (
    HmacSigner,
    HmacVerifier,
    RsaSigner,
    RsaVerifier,
    Signer,
    Verifier,
    signer_from_config,
    verifier_from_config,
)

__all__ = [
    "HmacSigner",
    "HmacVerifier",
    "MalformedUrlError",
    "RsaSigner",
    "RsaVerifier",
    "SignedFields",
    "Signer",
    "Verifier",
    "canonical_policy",
    "compose_signed_url",
    "parse_signed_url",
    "signer_from_config",
    "verifier_from_config",
]
