"""Who may sign right now.

Pure functions over already-loaded rows: no session, no clock, no writes.
"""
from typing import Iterable, List
from .models import EnvelopeStatus, SignerRole, SignerStatus, SigningOrder


def signing_rank(signer) -> int:
    """Position in a sequential envelope; signers sharing a group share a rank."""
    if signer.signing_group is not None:
        return signer.signing_group
    return signer.order


def _blocks(other, signer) -> bool:
    # declined and delegated signers have left the queue; non-signer roles never queue
    return (
        other.id != signer.id
        and other.role == SignerRole.SIGNER
        and other.status in SignerStatus.AWAITING
        and signing_rank(other) < signing_rank(signer)
    )


def can_sign(signer, envelope, signers: Iterable) -> bool:
    if envelope.status not in EnvelopeStatus.ACTIVE:
        return False
    if signer.status not in SignerStatus.CAN_ACT:
        return False
    if envelope.signing_order == SigningOrder.PARALLEL:
        return True
    return not any(_blocks(other, signer) for other in signers)


def next_signers(envelope, signers: Iterable) -> List:
    signers = list(signers)
    return [s for s in signers if can_sign(s, envelope, signers)]


def outstanding_signers(signers: Iterable) -> List:
    """role=signer participants whose signature is still required for completion."""
    return [
        s for s in signers
        if s.role == SignerRole.SIGNER
        and s.status not in (SignerStatus.COMPLETED, SignerStatus.DELEGATED)
    ]
