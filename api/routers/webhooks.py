"""GitHub webhook endpoint.

Deliveries are verified against ``X-Hub-Signature-256`` and processed in
the background; the endpoint answers 202 as soon as the delivery is
accepted.
"""

import json

import structlog
from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from api.dependencies import SettingsDep, WebhookProcessorDep
from integrations.github import WebhookEvent, verify_signature

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class WebhookAcceptedResponse(BaseModel):
    """Response model for an accepted delivery."""

    accepted: bool = Field(..., description="Delivery will be processed")
    event: str = Field(..., description="GitHub event type")
    delivery_id: str | None = Field(None, description="GitHub delivery ID")
    message: str = Field(default="", description="Status message")


@router.post(
    "/github",
    response_model=WebhookAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="GitHub webhook",
    description="Receive GitHub deliveries. Push events trigger scans of tracked branches.",
    responses={
        status.HTTP_400_BAD_REQUEST: {"description": "Malformed payload"},
        status.HTTP_401_UNAUTHORIZED: {"description": "Invalid signature"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Webhook secret not configured"},
    },
)
async def github_webhook(
    request: Request,
    settings: SettingsDep,
    processor: WebhookProcessorDep,
    background_tasks: BackgroundTasks,
    x_github_event: str = Header(default="", alias="X-GitHub-Event"),
    x_hub_signature_256: str | None = Header(default=None, alias="X-Hub-Signature-256"),
    x_github_delivery: str | None = Header(default=None, alias="X-GitHub-Delivery"),
) -> WebhookAcceptedResponse:
    """Receive a GitHub webhook delivery.

    Raises:
        HTTPException: 503 without a configured secret, 401 on a signature
            mismatch, 400 when the body is not a JSON object.
    """
    if not settings.github_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured",
        )

    body = await request.body()
    if not verify_signature(settings.github_webhook_secret, body, x_hub_signature_256):
        logger.warning("webhook_signature_invalid", delivery_id=x_github_delivery)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Payload must be an object"
        )

    if x_github_event != WebhookEvent.PUSH.value:
        logger.debug("webhook_event_ignored", event=x_github_event, delivery_id=x_github_delivery)
        return WebhookAcceptedResponse(
            accepted=False,
            event=x_github_event,
            delivery_id=x_github_delivery,
            message="Event ignored",
        )

    background_tasks.add_task(processor.process, x_github_event, payload)
    logger.info("webhook_accepted", event=x_github_event, delivery_id=x_github_delivery)
    return WebhookAcceptedResponse(
        accepted=True,
        event=x_github_event,
        delivery_id=x_github_delivery,
        message="Push accepted",
    )
