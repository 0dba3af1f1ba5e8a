# Out-of-band generation for deployments that render in a worker container.
# The API's inline /generate path calls the same function.

import logging
from typing import Optional
from celery import Celery
from sqlmodel import Session
from . import db
from .config import REDIS_URL, WORKER_QUEUE
from .instances import generate_instance_pdf
from .models import User

logger = logging.getLogger(__name__)

cel = Celery("pdf_forms", broker=REDIS_URL, backend=REDIS_URL)

@cel.task(name="generate_form_instance", queue=WORKER_QUEUE)
def generate_form_instance(instance_id: int, caller_id: Optional[int] = None, actor: str = "system"):
    with Session(db.engine) as session:
        caller = session.get(User, caller_id) if caller_id else None
        instance = generate_instance_pdf(session, instance_id, caller=caller, actor=actor)
        logger.info("worker completed instance %s", instance.id)
        return {
            "instance_id": instance.id,
            "pdf": instance.completed_pdf_key,
            "sha256_final": instance.completed_pdf_sha256,
        }
