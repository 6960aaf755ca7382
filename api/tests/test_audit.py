import pytest

from ceremony import audit, lifecycle
from ceremony.audit_events import SignedData, format_event_type, parse_event_data
from ceremony.models import AuditEvent, AuditLogImmutable

from conftest import sign


def test_every_event_chains_to_the_previous_one(session, build_envelope):
    env = build_envelope([{"name": "Ana Buyer", "email": "ana@example.com"}])
    sign(session, lifecycle.envelope_signers(session, env.id)[0])

    events = audit.events_for_envelope(session, env.id)
    assert [e.event_type for e in events] == ["created", "document_added", "sent", "signed"]
    assert events[0].prev_hash == audit.GENESIS_HASH
    for prev, ev in zip(events, events[1:]):
        assert ev.prev_hash == prev.hash
    assert audit.verify_chain(events)


def test_tampering_breaks_the_chain(session, build_envelope):
    env = build_envelope([{"name": "Ana Buyer", "email": "ana@example.com"}])
    copies = [AuditEvent(**ev.model_dump()) for ev in audit.events_for_envelope(session, env.id)]
    copies[1].event_data = copies[1].event_data.replace("agreement", "addendum")
    assert not audit.verify_chain(copies)


def test_audit_rows_cannot_be_updated(session, build_envelope):
    env = build_envelope([{"name": "Ana Buyer", "email": "ana@example.com"}])
    ev = audit.events_for_envelope(session, env.id)[0]
    ev.actor = "someone-else"
    session.add(ev)
    with pytest.raises(AuditLogImmutable):
        session.commit()
    session.rollback()


def test_audit_rows_cannot_be_deleted(session, build_envelope):
    env = build_envelope([{"name": "Ana Buyer", "email": "ana@example.com"}])
    ev = audit.events_for_envelope(session, env.id)[0]
    session.delete(ev)
    with pytest.raises(AuditLogImmutable):
        session.commit()
    session.rollback()


def test_signed_event_carries_a_typed_payload(session, build_envelope):
    env = build_envelope([{"name": "Ana Buyer", "email": "ana@example.com"}])
    signer = lifecycle.envelope_signers(session, env.id)[0]
    sign(session, signer)
    signed = audit.events_for_signer(session, signer.id)[-1]
    data = parse_event_data(signed.event_data)
    assert isinstance(data, SignedData)
    assert data.field_count == 1
    assert signed.actor == f"signer:{signer.id}"
    assert signed.ip_address == "203.0.113.7"


def test_event_labels():
    assert format_event_type("consent_given") == "Consent Given"
