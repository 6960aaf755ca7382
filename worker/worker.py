# Celery entrypoint:
#   celery -A worker.worker worker -Q $WORKER_QUEUE --beat
import logging

from ceremony.config import LOG_FORMAT, LOG_LEVEL
from ceremony.tasks import cel, expire_envelopes, retry_stalled_sealing, seal_envelope_task, send_reminders

logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

__all__ = ["cel", "expire_envelopes", "retry_stalled_sealing", "seal_envelope_task", "send_reminders"]
