"""
Database models for the single-use URL service.

A grant is the persisted half of a signed URL: it records which object the
URL may fetch, until when, and whether the one permitted fetch has happened.
"""
from datetime import datetime
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

# Initialize SQLAlchemy instance
db = SQLAlchemy()


class GrantState(Enum):
    """
    Enumeration for grant lifecycle states.

    - ACTIVE: Issued and not yet redeemed
    - CONSUMED: Redeemed exactly once; terminal

    Expiry is not a state. It is derived from ``expires_at`` when a URL is
    checked.
    """

    ACTIVE = "active"
    CONSUMED = "consumed"


class Grant(db.Model):
    """
    Single-use authorization for one object within a time window.

    Only ``GrantStore.try_consume`` changes ``state``; everything else treats
    rows as immutable.
    """

    __tablename__ = "grants"

    id = db.Column(db.String(64), primary_key=True)
    resource_path = db.Column(db.String(1024), nullable=False)
    # Seconds since the epoch (UTC); same value that is signed into the URL
    expires_at = db.Column(db.BigInteger, nullable=False, index=True)
    state = db.Column(
        db.Enum(GrantState, native_enum=False, length=16),
        default=GrantState.ACTIVE,
        nullable=False,
    )
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    consumed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resourcePath": self.resource_path,
            "expiresAt": int(self.expires_at),
            "state": self.state.value if self.state else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "consumedAt": self.consumed_at.isoformat() if self.consumed_at else None,
        }

    def __repr__(self):
        return f"<Grant {self.id} {self.resource_path} {self.state}>"
