"""Tests for access validation and the single-use guarantee."""
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock
from urllib.parse import quote

import pytest

from singleuse.issuer import Issuer
from singleuse.models import GrantState
from singleuse.security.policy import split_url
from singleuse.security.signers import HmacSigner, HmacVerifier
from singleuse.store import ConsumeOutcome, GrantStore, StoreUnavailable
from singleuse.validator import AccessRequest, Decision, DenyReason, Validator

T0 = 1_700_000_000
BASE = "https://cdn.example.com"


def _request(url):
    return AccessRequest.from_url(url)


def test_first_access_is_allowed(issuer, validator, store):
    signed = issuer.issue("reports/q3.pdf", 300)

    decision = validator.validate(_request(signed.url))

    assert decision == Decision.allow(signed.grant_id)
    assert store.get(signed.grant_id).state is GrantState.CONSUMED


def test_no_resurrection_after_consumption(issuer, validator, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    validator.validate(_request(signed.url))

    for _ in range(3):
        clock.advance(5)
        decision = validator.validate(_request(signed.url))
        assert decision.allowed is False
        assert decision.reason is DenyReason.ALREADY_USED


def test_expiry_precedence_over_active_grant(issuer, validator, store, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    clock.advance(301)

    decision = validator.validate(_request(signed.url))

    assert decision.reason is DenyReason.EXPIRED
    # Expired requests never burn the grant
    assert store.get(signed.grant_id).state is GrantState.ACTIVE


def test_access_at_exact_expiry_is_allowed(issuer, validator, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    clock.advance(300)

    assert validator.validate(_request(signed.url)).allowed is True


def _mutations(signed):
    path = quote(signed.resource_path, safe="/")
    last = "B" if signed.grant_id.endswith("A") else "A"
    yield signed.url.replace(f"/{path}?", "/reports/q4.pdf?")
    yield signed.url.replace(f"id={signed.grant_id}", f"id={signed.grant_id[:-1]}{last}")
    yield signed.url.replace(f"Expires={signed.expires_at}", f"Expires={signed.expires_at + 1}")
    yield signed.url.replace(f"Expires={signed.expires_at}", f"Expires={signed.expires_at - 1}")


def test_signature_integrity(issuer, validator, store):
    signed = issuer.issue("reports/q3.pdf", 300)

    for mutated in _mutations(signed):
        assert mutated != signed.url
        decision = validator.validate(_request(mutated))
        assert decision.reason is DenyReason.INVALID_SIGNATURE, mutated

    # None of the forgeries touched the real grant
    assert store.get(signed.grant_id).state is GrantState.ACTIVE
    assert validator.validate(_request(signed.url)).allowed is True


@pytest.mark.parametrize(
    "path",
    [
        "/reports/q3.pdf%20",
        "/reports/q3.pdf/",
        "//reports/q3.pdf",
        "/%09reports/q3.pdf",
        "/reports%2Fq3.pdf",
        "/reports/q3%2Epdf",
    ],
)
def test_path_variants_do_not_match_signed_path(issuer, validator, store, path):
    signed = issuer.issue("reports/q3.pdf", 300)
    _, query = split_url(signed.url)

    decision = validator.validate(AccessRequest(path=path, query=query))

    assert decision.reason is DenyReason.INVALID_SIGNATURE
    assert store.get(signed.grant_id).state is GrantState.ACTIVE
    assert validator.validate(_request(signed.url)).allowed is True


def test_tampered_signature_is_rejected(issuer, validator):
    signed = issuer.issue("reports/q3.pdf", 300)
    forged = signed.url.replace("Signature=", "Signature=AAAA")

    assert validator.validate(_request(forged)).reason is DenyReason.INVALID_SIGNATURE


def test_malformed_url_is_rejected_as_invalid_signature(validator):
    decision = validator.validate(_request(f"{BASE}/reports/q3.pdf?id=G1"))

    assert decision.reason is DenyReason.INVALID_SIGNATURE
    assert decision.grant_id is None


def test_unknown_grant(validator, clock):
    # Validly signed by our key, but the grant was never recorded
    forger = Issuer(MagicMock(), HmacSigner("test-signing-key", "k1"), BASE, clock=clock)
    forger.store.create.side_effect = lambda grant: grant
    signed = forger.issue("reports/q3.pdf", 300)

    decision = validator.validate(_request(signed.url))

    assert decision.reason is DenyReason.UNKNOWN_GRANT


def test_scenario_issue_use_reuse_and_expire(issuer, validator, clock):
    g1 = issuer.issue("reports/q3.pdf", 300)
    g2 = issuer.issue("reports/q3.pdf", 300)
    assert g1.expires_at == g2.expires_at == T0 + 300

    clock.advance(10)
    assert validator.validate(_request(g1.url)).allowed is True

    clock.advance(1)
    assert validator.validate(_request(g1.url)).reason is DenyReason.ALREADY_USED

    clock.now = T0 + 301
    assert validator.validate(_request(g2.url)).reason is DenyReason.EXPIRED


def test_store_outage_fails_closed(issuer, app, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    store = MagicMock()
    store.try_consume.side_effect = StoreUnavailable("statement timeout")
    validator = Validator(store, HmacVerifier({"k1": "test-signing-key"}), BASE, clock=clock)

    decision = validator.validate(_request(signed.url))

    assert decision.allowed is False
    assert decision.reason is DenyReason.TEMPORARILY_UNAVAILABLE
    assert decision.retryable is True


def test_retry_after_ambiguous_timeout_is_safe(issuer, store, app, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    flaky = MagicMock(wraps=store)
    calls = []

    def consume_then_time_out(grant_id):
        calls.append(grant_id)
        if len(calls) == 1:
            store.try_consume(grant_id)
            raise StoreUnavailable("timed out after commit")
        return store.try_consume(grant_id)

    flaky.try_consume.side_effect = consume_then_time_out
    validator = Validator(flaky, HmacVerifier({"k1": "test-signing-key"}), BASE, clock=clock)

    first = validator.validate(_request(signed.url))
    second = validator.validate(_request(signed.url))

    assert first.reason is DenyReason.TEMPORARILY_UNAVAILABLE
    assert second.reason is DenyReason.ALREADY_USED


def test_verifier_failure_fails_closed(issuer, store, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    verifier = MagicMock()
    verifier.verify.side_effect = TimeoutError("key fetch timed out")
    validator = Validator(store, verifier, BASE, clock=clock)

    decision = validator.validate(_request(signed.url))

    assert decision.reason is DenyReason.TEMPORARILY_UNAVAILABLE
    assert store.get(signed.grant_id).state is GrantState.ACTIVE


def test_store_is_not_consulted_for_invalid_or_expired(issuer, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    store = MagicMock()
    validator = Validator(store, HmacVerifier({"k1": "test-signing-key"}), BASE, clock=clock)

    validator.validate(_request(signed.url.replace("Signature=", "Signature=x")))
    clock.advance(1000)
    validator.validate(_request(signed.url))

    store.try_consume.assert_not_called()
    store.get.assert_not_called()


def test_validator_never_reads_before_writing(issuer, store, clock):
    signed = issuer.issue("reports/q3.pdf", 300)
    spy = MagicMock(wraps=store)
    validator = Validator(spy, HmacVerifier({"k1": "test-signing-key"}), BASE, clock=clock)

    validator.validate(_request(signed.url))

    spy.try_consume.assert_called_once_with(signed.grant_id)
    spy.get.assert_not_called()


@pytest.mark.parametrize("contenders", [2, 8])
def test_concurrent_redemption_has_single_winner(engine_factory, contenders):
    signer = HmacSigner("secret", "k1")
    issuer = Issuer(GrantStore(engine_factory()), signer, BASE, clock=lambda: T0)
    signed = issuer.issue("reports/q3.pdf", 300)

    # One independent engine per contender, as if each were its own process
    validators = [
        Validator(
            GrantStore(engine_factory()),
            HmacVerifier({"k1": "secret"}),
            BASE,
            clock=lambda: T0 + 1,
        )
        for _ in range(contenders)
    ]
    barrier = threading.Barrier(contenders)

    def redeem(validator):
        barrier.wait()
        return validator.validate(AccessRequest.from_url(signed.url))

    with ThreadPoolExecutor(max_workers=contenders) as pool:
        decisions = list(pool.map(redeem, validators))

    allowed = [d for d in decisions if d.allowed]
    denied = [d for d in decisions if not d.allowed]
    assert len(allowed) == 1
    assert [d.reason for d in denied] == [DenyReason.ALREADY_USED] * (contenders - 1)
    assert GrantStore(engine_factory()).try_consume(signed.grant_id) is (
        ConsumeOutcome.ALREADY_CONSUMED
    )
