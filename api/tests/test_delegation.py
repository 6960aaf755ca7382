import pytest

from ceremony import audit, lifecycle
from ceremony.audit_events import parse_event_data
from ceremony.delegation import delegate
from ceremony.errors import InvalidStateError, InvalidToken, ValidationError
from ceremony.sealing import seal_envelope

from conftest import sign, signer_ctx

EXTRA = [
    {"x": 10, "y": 10, "width": 20, "height": 5, "type": "initial", "signer_key": "ana@example.com"},
    {"x": 10, "y": 20, "width": 20, "height": 5, "type": "date", "signer_key": "ana@example.com", "required": False},
]


def two_people():
    return [
        {"name": "Ana Buyer", "email": "ana@example.com"},
        {"name": "Ben Buyer", "email": "ben@example.com"},
    ]


def test_delegate_takes_over_fields_and_position(session, build_envelope, sent_emails, emitted):
    env = build_envelope(two_people(), extra_fields=EXTRA)
    original = lifecycle.envelope_signers(session, env.id)[0]
    owned_before = {f.id for f in lifecycle.envelope_fields(session, env.id) if f.signer_id == original.id}
    old_token = original.signing_token

    substitute = delegate(session, old_token, "Dana Attorney", "dana@example.com", signer_ctx(original))

    session.refresh(original)
    assert original.status == "delegated"
    assert original.signing_token is None
    assert substitute.delegated_from == original.id
    assert substitute.order == original.order
    assert substitute.role == original.role
    assert substitute.signing_token

    fields = lifecycle.envelope_fields(session, env.id)
    assert {f.id for f in fields if f.signer_id == original.id} == set()
    assert {f.id for f in fields if f.signer_id == substitute.id} == owned_before

    assert sent_emails[-1]["to"] == "dana@example.com"
    assert emitted[-1][0] == "signerDelegated"

    events = [e for e in audit.events_for_envelope(session, env.id) if e.event_type == "delegated"]
    assert len(events) == 1
    data = parse_event_data(events[0].event_data)
    assert data.from_email == "ana@example.com"
    assert data.to_email == "dana@example.com"
    assert set(data.reassigned_field_ids) == owned_before

    with pytest.raises(InvalidToken):
        delegate(session, old_token, "Eve", "eve@example.com", signer_ctx(original))


def test_delegate_signs_and_envelope_completes(session, build_envelope, sealing_queue):
    env = build_envelope(two_people())
    original, second = lifecycle.envelope_signers(session, env.id)
    substitute = delegate(session, original.signing_token, "Dana Attorney", "dana@example.com", signer_ctx(original))

    sign(session, substitute)
    result = sign(session, second)

    assert result.sealing_triggered is True
    assert seal_envelope(session, env.id).status == "completed"


def test_cannot_delegate_after_opening_the_document(session, build_envelope):
    env = build_envelope(two_people())
    original = lifecycle.envelope_signers(session, env.id)[0]
    lifecycle.record_view(session, original.signing_token, signer_ctx(original))
    before = audit.event_counts(session, env.id)

    with pytest.raises(InvalidStateError):
        delegate(session, original.signing_token, "Dana", "dana@example.com", signer_ctx(original))
    session.rollback()
    assert audit.event_counts(session, env.id) == before


def test_cannot_delegate_to_yourself(session, build_envelope):
    env = build_envelope(two_people())
    original = lifecycle.envelope_signers(session, env.id)[0]
    with pytest.raises(ValidationError):
        delegate(session, original.signing_token, "Ana again", "ANA@example.com", signer_ctx(original))
