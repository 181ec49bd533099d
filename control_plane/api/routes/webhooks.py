import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from control_plane.api.dependencies import get_deployment_service, get_target_repository
from control_plane.api.schemas.deployment import WebhookAcceptedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/{target_id}/{token}", status_code=202, response_model=WebhookAcceptedResponse)
def receive_webhook(
    target_id: int,
    token: str,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    targets=Depends(get_target_repository),
    deployments=Depends(get_deployment_service),
):
    target = targets.get(target_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Webhook not found")

    if not hmac.compare_digest(token.encode("utf-8"), target.secret_token.encode("utf-8")):
        logger.warning(f"[webhook] Invalid token for target {target_id}")
        raise HTTPException(status_code=403, detail="Invalid token")

    if not target.is_active:
        raise HTTPException(status_code=409, detail="Webhook is disabled")

    job_id = deployments.trigger(target, payload or {})
    return WebhookAcceptedResponse(status="queued", job_id=job_id)
