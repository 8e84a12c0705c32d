from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api import deps
from app.models.user import User
from app.schemas.writing import RecoveryResponse
from app.services.orchestrator import Dispatcher
from app.services.recovery import RecoveryScanner

router = APIRouter()


@router.post("/projects/{project_id}/recover", response_model=RecoveryResponse)
async def admin_recover_project(
    project_id: UUID,
    db: Session = Depends(deps.get_db),
    current_user: User = Depends(deps.get_current_superuser),
    dispatch: Dispatcher = Depends(deps.get_writing_dispatcher),
):
    """Recover any user's stuck project (superusers only)."""
    return RecoveryScanner(db, dispatch=dispatch).recover(
        project_id, user=current_user, admin=True
    )
