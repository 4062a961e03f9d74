"""
Wiring of the grant store, issuer and validator from application config.

Signers and verifiers are built once per app and kept in ``app.extensions``
so PEM files are not re-read on every request. Stores are cheap wrappers
around the engine and are created per call.
"""
import time

from flask import current_app

from singleuse.issuer import Issuer
from singleuse.models import db
from singleuse.security.signers import signer_from_config, verifier_from_config
from singleuse.store import GrantStore
from singleuse.validator import Validator

_EXTENSION_KEY = "singleuse"


def _state(app) -> dict:
    return app.extensions.setdefault(_EXTENSION_KEY, {})


def grant_store(app=None) -> GrantStore:
    app = app or current_app._get_current_object()
    with app.app_context():
        engine = db.engine
    return GrantStore(engine, app.config.get("GRANT_STORE_TIMEOUT_MS"))


def get_signer(app=None):
    app = app or current_app._get_current_object()
    state = _state(app)
    if "signer" not in state:
        state["signer"] = signer_from_config(app.config)
    return state["signer"]


def get_verifier(app=None):
    app = app or current_app._get_current_object()
    state = _state(app)
    if "verifier" not in state:
        state["verifier"] = verifier_from_config(app.config)
    return state["verifier"]


def get_clock(app=None):
    """Time source; tests install a fixed clock under ``app.extensions``."""
    app = app or current_app._get_current_object()
    return _state(app).get("clock", time.time)


def build_issuer(app=None) -> Issuer:
    app = app or current_app._get_current_object()
    return Issuer(
        grant_store(app),
        get_signer(app),
        base_url=app.config["PUBLIC_BASE_URL"],
        max_ttl=app.config.get("GRANT_MAX_TTL", 86400),
        max_attempts=app.config.get("GRANT_ID_MAX_ATTEMPTS", 3),
        clock=get_clock(app),
    )


def build_validator(app=None) -> Validator:
    app = app or current_app._get_current_object()
    return Validator(
        grant_store(app),
        get_verifier(app),
        base_url=app.config["PUBLIC_BASE_URL"],
        clock=get_clock(app),
    )
