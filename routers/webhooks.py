"""
Router for the inference provider's completion callback.
Unauthenticated, but every call must carry a valid webhook signature.
"""

import logging

from fastapi import APIRouter, Depends, Request
from starlette.concurrency import run_in_threadpool

from dependencies import Container, get_container
from orchestrator import parse_callback_payload

router = APIRouter(tags=["webhooks"])


@router.post("/completion-callback")
async def completion_callback(request: Request, container: Container = Depends(get_container)):
    """
    Verifies the signature over the raw body, then applies the result.
    Once authentic, the provider always gets a 200 so it does not retry;
    processing failures are recorded on the job instead.
    """
    raw_body = await request.body()
    orchestrator = container.orchestrator

    orchestrator.verify_callback(raw_body, request.headers)
    payload = parse_callback_payload(raw_body)

    if container.settings.callback_dispatch == "celery":
        from tasks import process_prediction_callback

        try:
            await run_in_threadpool(process_prediction_callback.delay, payload)
            logging.info(f"📨 Queued callback for prediction {payload['id']}")
            return {"status": "ok", "outcome": "queued"}
        except Exception as e:
            # Broker unreachable: apply inline
            logging.error(f"❌ Could not queue callback for prediction {payload['id']}, applying inline: {e}")

    try:
        outcome = await run_in_threadpool(orchestrator.apply_callback, payload)
    except Exception as e:
        logging.error(f"❌ Callback processing error for prediction {payload['id']}: {e}")
        return {"status": "ok", "outcome": "error"}
    return {"status": "ok", "outcome": outcome.value}
