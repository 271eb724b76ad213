import logging
from typing import Any, Optional
from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from config import get_settings
from models.database import get_db
from services.credential_store import CredentialStore
from services.ghl_service import GHLAPIError, GHLService, get_ghl_service
from services.progress_stream import ProgressStream
from services.provisioning_service import start_provisioning

# Set up logging
logger = logging.getLogger(__name__)

# Define router
router = APIRouter()


# Pydantic models
class AgencyTokenOut(BaseModel):
    accessToken: str
    refreshToken: str


class SnapshotUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    snapshot_id: Optional[str] = Field(default=None, alias="snapshotId")
    override: bool = True


# API endpoints
@router.post("/accountCreationSSE")
async def create_account_sse(payload: Any = Body(default=None)):
    """Provision a new account, streaming progress as Server-Sent Events.

    The run continues even if the client goes away; only the stream writes
    stop.
    """
    logger.info("Received /accountCreationSSE request.")
    stream = ProgressStream()
    start_provisioning(payload, stream)
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/agency-token", response_model=AgencyTokenOut)
async def get_agency_token(
    company_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
):
    """Return the stored agency access and refresh tokens."""
    credential = CredentialStore(db).get(company_id or get_settings().ghl_company_id)
    if not credential or not credential.access_token:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No agency token found. Please ensure OAuth authorization is complete.",
        )
    return {"accessToken": credential.access_token, "refreshToken": credential.refresh_token}


@router.post("/api/locations/{location_id}/snapshot")
async def update_location_snapshot(
    location_id: str,
    update: SnapshotUpdate,
    company_id: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    ghl: GHLService = Depends(get_ghl_service),
):
    """Re-apply a snapshot (the configured one by default) to an existing location."""
    settings = get_settings()
    company_id = company_id or settings.ghl_company_id
    credential = CredentialStore(db).get(company_id)
    if not credential or not credential.access_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Agency access token not available. Please ensure OAuth authorization is complete.",
        )

    snapshot_id = update.snapshot_id or settings.ghl_snapshot_id
    try:
        return await ghl.update_location_snapshot(
            location_id, snapshot_id, company_id, credential.access_token, override=update.override
        )
    except GHLAPIError as e:
        raise HTTPException(status_code=e.status_code or status.HTTP_502_BAD_GATEWAY, detail=e.message)
