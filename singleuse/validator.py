"""Per-request validation of single-use signed URLs.

Order of checks:

1. parse the URL into its signed fields
2. verify the signature over the rebuilt canonical policy
3. reject if the signed expiry has passed (before touching the store, so an
   expired request never burns a grant)
4. atomically consume the grant; only the caller that flips it wins

The validator holds no locks and no state between calls. Exactly one winner
among concurrent redeemers comes from the store's conditional update alone.
Expiry is taken from the signed policy, which the signature covers, never from
an unsigned field.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from singleuse.security.policy import MalformedUrlError, parse_signed_url, split_url
from singleuse.security.signers import Verifier
from singleuse.store import ConsumeOutcome, GrantStore, StoreUnavailable

logger = structlog.get_logger(__name__)


class DenyReason(Enum):
    INVALID_SIGNATURE = "InvalidSignature"
    EXPIRED = "Expired"
    ALREADY_USED = "AlreadyUsed"
    UNKNOWN_GRANT = "UnknownGrant"
    TEMPORARILY_UNAVAILABLE = "TemporarilyUnavailable"


@dataclass(frozen=True)
class AccessRequest:
    """Path and raw query string of one access attempt."""

    path: str
    query: str = ""

    @classmethod
    def from_url(cls, url: str) -> AccessRequest:
        path, query = split_url(url)
        return cls(path=path, query=query)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    grant_id: str | None = None

    @classmethod
    def allow(cls, grant_id: str) -> Decision:
        return cls(allowed=True, grant_id=grant_id)

    @classmethod
    def deny(cls, reason: DenyReason, grant_id: str | None = None) -> Decision:
        return cls(allowed=False, reason=reason, grant_id=grant_id)

    @property
    def retryable(self) -> bool:
        return self.reason is DenyReason.TEMPORARILY_UNAVAILABLE


_OUTCOME_REASONS = {
    ConsumeOutcome.ALREADY_CONSUMED: DenyReason.ALREADY_USED,
    ConsumeOutcome.NOT_FOUND: DenyReason.UNKNOWN_GRANT,
}


class Validator:
    def __init__(
        self,
        store: GrantStore,
        verifier: Verifier,
        base_url: str,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.verifier = verifier
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    def _deny(self, reason: DenyReason, grant_id: str | None = None, **context) -> Decision:
        logger.info(
            "access_denied", reason=reason.value, grant_id=grant_id, **context
        )
        return Decision.deny(reason, grant_id)

    def validate(self, request: AccessRequest) -> Decision:
        try:
            fields = parse_signed_url(request.path, request.query)
        except MalformedUrlError as e:
            return self._deny(DenyReason.INVALID_SIGNATURE, detail=str(e))

        policy = fields.policy(self.base_url)
        try:
            valid = self.verifier.verify(policy, fields.signature, fields.key_id)
        except Exception as e:
            # Key source failures are not proof of forgery; fail closed
            logger.warning("verifier_unavailable", grant_id=fields.grant_id, error=str(e))
            return self._deny(DenyReason.TEMPORARILY_UNAVAILABLE, fields.grant_id)
        if not valid:
            return self._deny(
                DenyReason.INVALID_SIGNATURE, fields.grant_id, key_id=fields.key_id
            )

        now = int(self.clock())
        if now > fields.expires_at:
            return self._deny(
                DenyReason.EXPIRED, fields.grant_id, expires_at=fields.expires_at
            )

        try:
            outcome = self.store.try_consume(fields.grant_id)
        except StoreUnavailable:
            return self._deny(DenyReason.TEMPORARILY_UNAVAILABLE, fields.grant_id)

        if outcome is ConsumeOutcome.CONSUMED:
            logger.info(
                "access_allowed",
                grant_id=fields.grant_id,
                resource_path=fields.resource_path,
            )
            return Decision.allow(fields.grant_id)
        return self._deny(_OUTCOME_REASONS[outcome], fields.grant_id)
