from datetime import timedelta

import pytest

from ceremony import lifecycle, tokens
from ceremony.errors import InvalidToken
from ceremony.models import Organization
from ceremony.utils import make_token, utcnow

from conftest import SENDER


def two_signers():
    return [
        {"name": "Ana Buyer", "email": "ana@example.com"},
        {"name": "Ben Buyer", "email": "ben@example.com"},
    ]


def test_send_mints_one_token_per_signer(session, build_envelope):
    env = build_envelope(two_signers())
    signers = lifecycle.envelope_signers(session, env.id)
    assert all(s.signing_token for s in signers)
    assert len({s.signing_token for s in signers}) == 2
    assert all(s.token_expires_at > utcnow() + timedelta(hours=71) for s in signers)


def test_validate_resolves_signer_and_tenant(session, build_envelope, org):
    env = build_envelope(two_signers())
    first = lifecycle.envelope_signers(session, env.id)[0]
    tc = tokens.validate(session, first.signing_token)
    assert tc.signer.id == first.id
    assert tc.envelope.id == env.id
    assert tc.tenant_id == org.id


@pytest.mark.parametrize("bad", ["", "not-a-token", make_token({"signer_id": 999, "nonce": "x"})])
def test_validate_rejects_unknown_tokens(session, build_envelope, bad):
    build_envelope(two_signers())
    with pytest.raises(InvalidToken):
        tokens.validate(session, bad)


def test_forged_token_for_real_signer_is_rejected(session, build_envelope):
    env = build_envelope(two_signers())
    first = lifecycle.envelope_signers(session, env.id)[0]
    forged = make_token({"signer_id": first.id, "nonce": "guessed"})
    with pytest.raises(InvalidToken, match="revoked"):
        tokens.validate(session, forged)


def test_expired_token_is_rejected(session, build_envelope):
    env = build_envelope(two_signers())
    first = lifecycle.envelope_signers(session, env.id)[0]
    first.token_expires_at = utcnow() - timedelta(minutes=1)
    session.add(first)
    session.commit()
    with pytest.raises(InvalidToken, match="expired"):
        tokens.validate(session, first.signing_token)


def test_token_from_another_organization_is_rejected(session, build_envelope):
    env = build_envelope(two_signers())
    other = Organization(name="Other", access_token="other")
    session.add(other)
    session.commit()
    first = lifecycle.envelope_signers(session, env.id)[0]
    with pytest.raises(InvalidToken, match="another organization"):
        tokens.validate(session, first.signing_token, tenant_id=other.id)


def test_resend_keeps_a_token_that_is_still_valid(session, build_envelope, sent_emails):
    env = build_envelope(two_signers())
    first = lifecycle.envelope_signers(session, env.id)[0]
    first.token_expires_at = utcnow() + timedelta(hours=40)
    session.add(first)
    session.commit()
    before_token, before_expiry = first.signing_token, first.token_expires_at

    signer, rotated = lifecycle.resend(session, env.id, first.id, ctx=SENDER)

    assert rotated is False
    assert signer.signing_token == before_token
    assert signer.token_expires_at == before_expiry
    assert sent_emails[-1]["to"] == "ana@example.com"
    assert sent_emails[-1]["subject"].startswith("Reminder")


def test_resend_rotates_an_expired_token(session, build_envelope):
    env = build_envelope(two_signers())
    first = lifecycle.envelope_signers(session, env.id)[0]
    first.token_expires_at = utcnow() - timedelta(hours=1)
    session.add(first)
    session.commit()
    stale = first.signing_token

    signer, rotated = lifecycle.resend(session, env.id, first.id, ctx=SENDER)

    assert rotated is True
    assert signer.signing_token != stale
    assert signer.token_expires_at > utcnow()
    with pytest.raises(InvalidToken):
        tokens.validate(session, stale)
    assert tokens.validate(session, signer.signing_token).signer.id == first.id
