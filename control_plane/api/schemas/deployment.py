from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from control_plane.core.models import Credential, DeploymentRun


class WebhookAcceptedResponse(BaseModel):
    status: str
    job_id: Union[int, str]


class ManualDeployRequest(BaseModel):
    commit_hash: Optional[str] = None
    commit_message: Optional[str] = None
    author: Optional[str] = None


class DeploymentRunResponse(BaseModel):
    run_id: int
    target_id: int
    status: str
    commit_hash: Optional[str] = None
    short_commit_hash: str = ""
    commit_message: Optional[str] = None
    author: Optional[str] = None
    output: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    @classmethod
    def from_domain(cls, run: DeploymentRun) -> "DeploymentRunResponse":
        return cls(
            run_id=run.run_id,
            target_id=run.target_id,
            status=run.status.value,
            commit_hash=run.commit_hash,
            short_commit_hash=run.short_commit_hash,
            commit_message=run.commit_message,
            author=run.author,
            output=run.output,
            error_message=run.error_message,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
        )


class CredentialResponse(BaseModel):
    """Public half only; the private key never leaves the vault over HTTP."""

    credential_id: Optional[int] = None
    target_id: int
    key_type: str
    public_key: str
    fingerprint: Optional[str] = None
    formatted_fingerprint: str
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, credential: Credential) -> "CredentialResponse":
        data: Dict[str, Any] = credential.to_public_dict()
        data["created_at"] = credential.created_at
        data["formatted_fingerprint"] = credential.formatted_fingerprint
        return cls(**data)
