"""
Background book-writing endpoints.

Actions return as soon as the new state is stored; progress is visible by
polling the project's writing status and counters.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api import deps
from app.models.user import User
from app.schemas.writing import OrchestrateRequest, OrchestrateResponse, RecoveryResponse
from app.services.orchestrator import BookWriterOrchestrator, Dispatcher
from app.services.recovery import RecoveryScanner

router = APIRouter()


@router.post("/{project_id}/writing", response_model=OrchestrateResponse)
async def orchestrate_writing(
    project_id: UUID,
    request: OrchestrateRequest,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    dispatch: Dispatcher = Depends(deps.get_writing_dispatcher),
):
    """
    Start, resume, pause or cancel background writing for a project.

    - start: rewrite every scene from the beginning (rejected while writing)
    - pause: stop after the scene currently being written
    - resume: continue a paused or failed run, retrying failed scenes
    - cancel: stop and reset all scene progress; written text is kept
    """
    orchestrator = BookWriterOrchestrator(db, dispatch=dispatch)
    return orchestrator.orchestrate(project_id, request.action, current_user)


@router.post("/{project_id}/recover", response_model=RecoveryResponse)
async def recover_missing_scenes(
    project_id: UUID,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_user),
    dispatch: Dispatcher = Depends(deps.get_writing_dispatcher),
):
    """Queue scenes missing from an interrupted run and restart writing."""
    return RecoveryScanner(db, dispatch=dispatch).recover(project_id, user=current_user)
