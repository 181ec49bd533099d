from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from control_plane.api.dependencies import (
    get_deployment_service,
    get_run_repository,
    get_target_repository,
)
from control_plane.api.schemas.deployment import (
    CredentialResponse,
    DeploymentRunResponse,
    ManualDeployRequest,
    WebhookAcceptedResponse,
)
from control_plane.core.errors import CredentialError

router = APIRouter(tags=["deployments"])


def _require_target(targets, target_id: int):
    target = targets.get(target_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Target not found")
    return target


@router.post("/targets/{target_id}/deploy", status_code=202, response_model=WebhookAcceptedResponse)
def trigger_deployment(
    target_id: int,
    request: Optional[ManualDeployRequest] = None,
    targets=Depends(get_target_repository),
    deployments=Depends(get_deployment_service),
):
    """Manual deploy from the dashboard; also allowed for disabled targets."""
    target = _require_target(targets, target_id)
    payload = request.model_dump() if request else {}

    job_id = deployments.trigger(target, payload)
    return WebhookAcceptedResponse(status="queued", job_id=job_id)


@router.get("/targets/{target_id}/deployments", response_model=List[DeploymentRunResponse])
def list_deployments(
    target_id: int,
    limit: int = 20,
    targets=Depends(get_target_repository),
    runs=Depends(get_run_repository),
):
    _require_target(targets, target_id)
    return [DeploymentRunResponse.from_domain(run) for run in runs.list_for_target(target_id, limit)]


@router.get("/deployments/{run_id}", response_model=DeploymentRunResponse)
def get_deployment(
    run_id: int,
    runs=Depends(get_run_repository),
):
    run = runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Deployment not found")

    return DeploymentRunResponse.from_domain(run)


@router.post("/targets/{target_id}/ssh-key", response_model=CredentialResponse)
def regenerate_ssh_key(
    target_id: int,
    targets=Depends(get_target_repository),
    deployments=Depends(get_deployment_service),
):
    target = _require_target(targets, target_id)

    try:
        credential = deployments.regenerate_credential(target)
    except CredentialError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return CredentialResponse.from_domain(credential)
