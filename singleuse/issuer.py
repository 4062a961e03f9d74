"""Issuance of single-use grants and their signed URLs.

A grant row is always written before the URL is signed, so a URL can never
exist without a grant behind it. The reverse (a grant whose URL was never
returned because signing failed) is harmless: nobody holds a link to it.
"""
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from singleuse.models import Grant
from singleuse.security.policy import (
    canonical_policy,
    compose_signed_url,
    normalize_resource_path,
)
from singleuse.security.signers import Signer
from singleuse.store import DuplicateIdError, GrantStore, StoreUnavailable

logger = structlog.get_logger(__name__)

# 24 random bytes -> 32 URL-safe characters
GRANT_ID_BYTES = 24


class IssuanceError(Exception):
    """Base class for errors returned to a caller requesting a grant."""


class InvalidTtlError(IssuanceError):
    pass


class InvalidResourcePathError(IssuanceError):
    pass


class IssuanceFailedError(IssuanceError):
    """The grant could not be created or signed."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class SignedUrl:
    url: str
    grant_id: str
    resource_path: str
    expires_at: int

    def to_dict(self) -> dict:
        return {
            "signedUrl": self.url,
            "id": self.grant_id,
            "resourcePath": self.resource_path,
            "expiresAt": self.expires_at,
        }


def new_grant_id() -> str:
    return secrets.token_urlsafe(GRANT_ID_BYTES)


class Issuer:
    def __init__(
        self,
        store: GrantStore,
        signer: Signer,
        base_url: str,
        max_ttl: int = 86400,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = new_grant_id,
    ):
        self.store = store
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.max_ttl = int(max_ttl)
        self.max_attempts = max(1, int(max_attempts))
        self.clock = clock
        self.id_factory = id_factory

    def _check_ttl(self, ttl) -> int:
        # bool is an int subclass; "true" is not a lifetime
        if isinstance(ttl, bool) or not isinstance(ttl, int):
            raise InvalidTtlError("ttl must be an integer number of seconds")
        if ttl <= 0:
            raise InvalidTtlError("ttl must be positive")
        if ttl > self.max_ttl:
            raise InvalidTtlError(f"ttl must not exceed {self.max_ttl} seconds")
        return ttl

    def _check_path(self, resource_path) -> str:
        if not isinstance(resource_path, str):
            raise InvalidResourcePathError("resourcePath must be a string")
        path = normalize_resource_path(resource_path)
        if not path:
            raise InvalidResourcePathError("resourcePath must not be empty")
        if ".." in path.split("/"):
            raise InvalidResourcePathError("resourcePath must not contain '..'")
        return path

    def issue(self, resource_path: str, ttl: int) -> SignedUrl:
        path = self._check_path(resource_path)
        ttl = self._check_ttl(ttl)
        expires_at = int(self.clock()) + ttl

        grant = None
        for attempt in range(1, self.max_attempts + 1):
            candidate = Grant(
                id=self.id_factory(), resource_path=path, expires_at=expires_at
            )
            try:
                grant = self.store.create(candidate)
                break
            except DuplicateIdError:
                # Negligible with random ids; worth a loud log when it happens
                logger.warning(
                    "grant_id_collision", attempt=attempt, max_attempts=self.max_attempts
                )
            except StoreUnavailable as e:
                logger.error("issuance_failed", cause="store_unavailable", error=str(e))
                raise IssuanceFailedError(
                    "grant store unavailable", retryable=True
                ) from e
        if grant is None:
            logger.error("issuance_failed", cause="id_collisions", attempts=self.max_attempts)
            raise IssuanceFailedError("could not allocate a unique grant id")

        policy = canonical_policy(self.base_url, path, grant.id, expires_at)
        try:
            signature = self.signer.sign(policy)
        except Exception as e:
            logger.error(
                "issuance_failed", cause="signer_error", grant_id=grant.id, error=str(e)
            )
            raise IssuanceFailedError("could not sign URL", retryable=True) from e

        url = compose_signed_url(
            self.base_url, path, grant.id, expires_at, signature, self.signer.key_id
        )
        logger.info(
            "grant_issued",
            grant_id=grant.id,
            resource_path=path,
            expires_at=expires_at,
            ttl=ttl,
        )
        return SignedUrl(
            url=url, grant_id=grant.id, resource_path=path, expires_at=expires_at
        )
