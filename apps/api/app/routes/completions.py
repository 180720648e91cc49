"""Artifact list routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.repositories.base import TrackerStore
from app.routes.dependencies import get_authenticated_principal, get_store
from app.schemas.auth import AuthPrincipal
from app.schemas.error import ErrorResponse
from app.schemas.generation import CompletionArtifact
from app.services.matcher import to_artifact

router = APIRouter(prefix="/completions", tags=["Completions"])


@router.get(
    "",
    response_model=list[CompletionArtifact],
    responses={401: {"model": ErrorResponse}},
)
async def list_completions(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    store: Annotated[TrackerStore, Depends(get_store)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[CompletionArtifact]:
    records = await store.list_completions(user_id=principal.user_id, limit=limit)
    return [to_artifact(record) for record in records]
