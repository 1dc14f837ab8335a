"""GitHub webhook receiver.

The signature over the raw body is verified before the body is parsed and
before the session store is touched. Acknowledgements are 200 even when the
event is ignored, so GitHub does not redeliver.
"""

import json

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from quire.api.deps import get_session_service, get_webhook_secret
from quire.auth.callbacks import SIGNATURE_HEADER, verify_webhook_signature
from quire.errors import InvalidRequestError
from quire.logging import get_logger
from quire.services.github_webhooks import handle_github_event

logger = get_logger(__name__)

router = APIRouter()

EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"


@router.post("/webhooks/github")
async def receive_github_webhook(request: Request) -> dict:
    body = await request.body()
    verify_webhook_signature(
        get_webhook_secret(request), body, request.headers.get(SIGNATURE_HEADER)
    )

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise InvalidRequestError(message="Malformed JSON body") from e
    if not isinstance(payload, dict):
        raise InvalidRequestError(message="Webhook payload must be a JSON object")

    event = request.headers.get(EVENT_HEADER)
    logger.info(
        "webhook.received",
        github_event=event,
        delivery_id=request.headers.get(DELIVERY_HEADER),
        action=payload.get("action"),
    )

    # Store calls block
    return await run_in_threadpool(
        handle_github_event, get_session_service(request), event, payload
    )
