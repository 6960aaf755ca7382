"""Semantic event fan-out to integration listeners.

The ceremony only announces what happened; who listens (webhook dispatcher,
CRM sync, chat notifier) is configured elsewhere via ``register``.
"""
import logging
from collections import defaultdict
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

ENVELOPE_SENT = "envelopeSent"
SIGNER_COMPLETED = "signerCompleted"
SIGNER_DECLINED = "signerDeclined"
SIGNER_DELEGATED = "signerDelegated"
ENVELOPE_VOIDED = "envelopeVoided"
ENVELOPE_COMPLETED = "envelopeCompleted"

_listeners: Dict[str, List[Callable[[str, dict], None]]] = defaultdict(list)


def register(event_name: str, listener: Callable[[str, dict], None]):
    _listeners[event_name].append(listener)


def unregister(event_name: str, listener: Callable[[str, dict], None]):
    if listener in _listeners.get(event_name, []):
        _listeners[event_name].remove(listener)


def emit(event_name: str, payload: dict) -> int:
    delivered = 0
    for listener in list(_listeners.get(event_name, [])):
        try:
            listener(event_name, payload)
        except Exception:
            logger.exception("integration listener %r failed on %s", listener, event_name)
            continue
        delivered += 1
    return delivered


def envelope_payload(envelope) -> dict:
    return {
        "envelope_id": envelope.id,
        "organization_id": envelope.organization_id,
        "status": envelope.status,
        "subject": envelope.subject,
    }


def signer_payload(envelope, signer, **extra) -> dict:
    return {
        **envelope_payload(envelope),
        "signer": {"id": signer.id, "name": signer.name, "email": signer.email, "role": signer.role},
        **extra,
    }
