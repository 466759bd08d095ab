# tasks.py

import logging
import traceback

from celery import Celery
from celery.signals import worker_process_init

from config import Settings, configure_logging
from dependencies import build_container

_settings = Settings.from_env()

celery = Celery("tasks", broker=_settings.celery_broker_url, backend=_settings.celery_broker_url)
celery.conf.update(task_acks_late=True, task_reject_on_worker_lost=True)
configure_logging(_settings.log_level)

# Built once per worker process
_container = None


def bind_container(container):
    """Install the container this process's tasks use."""
    global _container
    _container = container


def get_container():
    global _container
    if _container is None:
        _container = build_container(_settings)
    return _container


@worker_process_init.connect
def _init_worker(**kwargs):
    bind_container(build_container(_settings))


@celery.task(name="tasks.process_prediction_callback")
def process_prediction_callback(payload: dict) -> str:
    """
    Applies an already-authenticated provider callback: downloads the video,
    stores it and finishes the job. Failures end up on the job record.
    """
    prediction_id = payload.get("id")
    logging.info(f"📝 Worker received callback for prediction {prediction_id}")
    try:
        outcome = get_container().orchestrator.apply_callback(payload)
    except Exception as e:
        logging.error(f"❌ Worker failed callback for prediction {prediction_id}. Error: {e}")
        traceback.print_exc()
        raise
    logging.info(f"✅ Worker finished callback for prediction {prediction_id}: {outcome.value}")
    return outcome.value
