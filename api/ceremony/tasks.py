import logging
from celery import Celery
from sqlmodel import Session
from . import db, lifecycle
from .config import REDIS_URL, SEAL_MAX_RETRIES, SEAL_RETRY_BACKOFF, WORKER_QUEUE
from .errors import SealingFailure
from .sealing import seal_envelope

logger = logging.getLogger(__name__)

cel = Celery("ceremony", broker=REDIS_URL, backend=REDIS_URL)
cel.conf.task_default_queue = WORKER_QUEUE
cel.conf.beat_schedule = {
    "expire-envelopes": {"task": "expire_envelopes", "schedule": 300.0},
    "send-reminders": {"task": "send_reminders", "schedule": 3600.0},
    "retry-stalled-sealing": {"task": "retry_stalled_sealing", "schedule": 600.0},
}


@cel.task(
    name="seal_envelope",
    queue=WORKER_QUEUE,
    autoretry_for=(SealingFailure,),
    retry_backoff=SEAL_RETRY_BACKOFF,
    retry_jitter=True,
    max_retries=SEAL_MAX_RETRIES,
)
def seal_envelope_task(envelope_id: int):
    with Session(db.engine) as session:
        env = seal_envelope(session, envelope_id)
        return {"envelope_id": envelope_id, "status": env.status, "sealed_hash": env.sealed_hash}


@cel.task(name="expire_envelopes", queue=WORKER_QUEUE)
def expire_envelopes():
    with Session(db.engine) as session:
        return lifecycle.expire_overdue(session)


@cel.task(name="send_reminders", queue=WORKER_QUEUE)
def send_reminders():
    with Session(db.engine) as session:
        return lifecycle.send_due_reminders(session)


@cel.task(name="retry_stalled_sealing", queue=WORKER_QUEUE)
def retry_stalled_sealing():
    with Session(db.engine) as session:
        stalled = lifecycle.stalled_sealing(session)
    for envelope_id in stalled:
        logger.warning("re-enqueueing stalled sealing for envelope %s", envelope_id)
        seal_envelope_task.delay(envelope_id)
    return len(stalled)
