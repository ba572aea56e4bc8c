"""
Mail sync endpoints.

- POST /mail/sync/{mail_sync_id}: manual "sync now" (runs in background)
- GET /mail/sync/{mail_sync_id}/status: sync status for the dashboard
- GET /mail/sync/inactive: mailboxes that need re-authentication
- POST /mail/labels/{token_id}: link a token, creating or refreshing its mailbox
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.mail_sync import MailSync
from app.services import db_service
from app.services.errors import CredentialInvalid, MailSyncError
from app.services.label_service import initialize_labels
from app.services.sync_service import SyncOrchestrator, build_orchestrator, run_sync_job


router = APIRouter(prefix="/mail", tags=["Mail Sync"])

REAUTH_MARKERS = ("re-authenticate", "token expired", "inactive")


# ============ Response Schemas ============

class SyncStartedResponse(BaseModel):
    message: str
    status: str


class SyncStatusResponse(BaseModel):
    id: int
    status: str
    last_synced: Optional[datetime]
    message_count: int
    is_active: bool
    needs_reauth: bool
    error_message: Optional[str] = None


class LinkedMailSyncResponse(BaseModel):
    id: int
    user: str
    provider: str
    token_id: int
    is_active: bool
    sync_status: Optional[str]

    class Config:
        from_attributes = True


class InactiveSyncResponse(BaseModel):
    id: int
    provider: str
    sync_status: Optional[str]
    last_synced: Optional[datetime]

    class Config:
        from_attributes = True


_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Shared orchestrator for scheduler and manual triggers."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def _get_mail_sync(db: Session, mail_sync_id: int) -> MailSync:
    mail_sync = db.get(MailSync, mail_sync_id)
    if mail_sync is None:
        raise HTTPException(status_code=404, detail="Mail sync not found")
    return mail_sync


def parse_sync_status(raw_status: Optional[str], is_active: bool) -> tuple[str, Optional[str], bool]:
    """
    Split a stored sync_status into (status, error_message, needs_reauth).

    Failures are stored as "failed: <reason>".
    """
    status = raw_status or "ready"
    error_message = None
    needs_reauth = False

    if status.startswith("failed:"):
        error_message = status[len("failed:"):].strip()
        status = "failed"
        needs_reauth = any(marker in error_message.lower() for marker in REAUTH_MARKERS)
    elif status == "inactive":
        error_message = "Token expired - re-authentication required"
        needs_reauth = True

    return status, error_message, needs_reauth or not is_active


@router.post("/sync/{mail_sync_id}", response_model=SyncStartedResponse)
def start_mail_sync(
    mail_sync_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Trigger a non-blocking sync.

    Uses the same orchestrator as scheduled runs, so an interrupted full
    sync is resumed rather than restarted.
    """
    mail_sync = _get_mail_sync(db, mail_sync_id)

    if not mail_sync.is_active:
        raise HTTPException(status_code=400, detail="Mail sync is inactive - please re-authenticate")
    if mail_sync.sync_status == "in_progress":
        raise HTTPException(
            status_code=409,
            detail="Mail sync is already in progress. Please wait for it to complete."
        )

    mail_sync.sync_status = "in_progress"
    db.commit()

    background_tasks.add_task(run_sync_job, orchestrator, mail_sync_id)

    return SyncStartedResponse(message="Mail sync started in background", status="in_progress")


@router.post("/labels/{token_id}", response_model=LinkedMailSyncResponse)
def link_mail_token(
    token_id: int,
    user: str = Query(...),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Fetch the Gmail label catalog for a stored token and create or refresh
    the user's mailbox row. A previously deactivated mailbox is reactivated.
    """
    try:
        return initialize_labels(orchestrator.token_provider, orchestrator.state_store, token_id, user)
    except CredentialInvalid as e:
        raise HTTPException(status_code=400, detail=f"Token is not usable - please re-authenticate: {e}")
    except MailSyncError as e:
        raise HTTPException(status_code=502, detail=f"Failed to fetch Gmail labels: {e}")


@router.get("/sync/inactive", response_model=list[InactiveSyncResponse])
def list_inactive_syncs(user: str = Query(...), db: Session = Depends(get_db)):
    """Mailboxes whose credential was revoked/expired."""
    return db.query(MailSync).filter(
        MailSync.user == user,
        MailSync.is_active.is_(False)
    ).order_by(MailSync.id).all()


@router.get("/sync/{mail_sync_id}/status", response_model=SyncStatusResponse)
def mail_sync_status(mail_sync_id: int, db: Session = Depends(get_db)):
    """Current sync status, message count and whether re-auth is needed."""
    mail_sync = _get_mail_sync(db, mail_sync_id)
    status, error_message, needs_reauth = parse_sync_status(mail_sync.sync_status, mail_sync.is_active)

    return SyncStatusResponse(
        id=mail_sync.id,
        status=status,
        last_synced=mail_sync.last_synced,
        message_count=db_service.count_messages(db, mail_sync.id),
        is_active=mail_sync.is_active,
        needs_reauth=needs_reauth,
        error_message=error_message,
    )
