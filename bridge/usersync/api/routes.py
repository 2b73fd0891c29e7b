"""
API routes for the usersync HTTP surface.

User routes go through the mutation pipeline with the default
REQUEST_AND_BROADCAST channel; replication routes go through the
pull/push protocol.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ..pipeline.mutations import MutationPipeline
from ..replication.documents import Checkpoint
from ..replication.protocol import DEFAULT_PULL_LIMIT, MAX_PULL_LIMIT, ReplicationProtocol
from .auth import TokenClaims, require_auth, resolve_actor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["usersync"])


# --- Request Models ---


class UserWriteRequest(BaseModel):
    """Request to create or update a user.

    Fields are checked by the pipeline so malformed input yields a
    VALIDATION_ERROR body.
    """

    email: str | None = Field(None, description="Email address")
    status: str | None = Field(None, description="Account status")
    role: str | None = Field(None, description="Optional role")


class PushRequest(BaseModel):
    """Replication push body."""

    documents: list[dict[str, Any]] = Field(
        ..., description="Rows of {newDocumentState, assumedMasterState?}"
    )


# --- Dependencies ---


def get_pipeline(request: Request) -> MutationPipeline:
    """Get the mutation pipeline from app state."""
    return request.app.state.pipeline


def get_protocol(request: Request) -> ReplicationProtocol:
    """Get the replication protocol from app state."""
    return request.app.state.protocol


def get_actor(
    request: Request,
    claims: TokenClaims | None = Depends(require_auth),
) -> str:
    """Authenticate the request and name its actor."""
    return resolve_actor(request, claims)


# --- User Routes ---


@router.post("/users", status_code=201)
async def create_user(
    body: UserWriteRequest,
    pipeline: MutationPipeline = Depends(get_pipeline),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Create a user at version 1."""
    result = await pipeline.create(body.email, body.status, role=body.role, actor=actor)
    return result.to_dict()


@router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    pipeline: MutationPipeline = Depends(get_pipeline),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Latest version of a user."""
    result = await pipeline.get_latest(user_id)
    return result.to_dict()


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    body: UserWriteRequest,
    pipeline: MutationPipeline = Depends(get_pipeline),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Overwrite a user's fields, producing the next version."""
    result = await pipeline.update(user_id, body.email, body.status, role=body.role, actor=actor)
    return result.to_dict()


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    pipeline: MutationPipeline = Depends(get_pipeline),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Soft delete a user."""
    result = await pipeline.delete(user_id, actor=actor)
    return result.to_dict()


@router.get("/users/{user_id}/versions")
async def list_user_versions(
    user_id: str,
    pipeline: MutationPipeline = Depends(get_pipeline),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Full version history of a user."""
    history = await pipeline.list_versions(user_id)
    return history.to_dict()


@router.get("/users/{user_id}/versions/{version}")
async def get_user_version(
    user_id: str,
    version: str,
    pipeline: MutationPipeline = Depends(get_pipeline),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """One specific version of a user."""
    result = await pipeline.get_version(user_id, version)
    return result.to_dict()


# --- Replication Routes ---


@router.get("/replication/users/pull")
async def pull_users(
    updated_at: str | None = Query(None, description="Checkpoint updated_at"),
    id: str | None = Query(None, description="Checkpoint document id"),
    limit: int = Query(DEFAULT_PULL_LIMIT, ge=1, le=MAX_PULL_LIMIT, description="Page size"),
    protocol: ReplicationProtocol = Depends(get_protocol),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Documents changed after the checkpoint."""
    checkpoint = Checkpoint.from_dict({"updated_at": updated_at, "id": id}) if updated_at else None
    result = await protocol.pull(checkpoint, limit=limit)
    return result.to_dict()


@router.post("/replication/users/push")
async def push_users(
    body: PushRequest,
    protocol: ReplicationProtocol = Depends(get_protocol),
    actor: str = Depends(get_actor),
) -> dict[str, Any]:
    """Apply pushed documents."""
    result = await protocol.push(body.documents, actor=actor)
    return result.to_dict()
