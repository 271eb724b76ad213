import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from config import get_settings
from models.database import get_db
from services.credential_store import CredentialStore
from services.ghl_service import GHLAPIError, GHLService, get_ghl_service

# Set up logging
logger = logging.getLogger(__name__)

# Define router
router = APIRouter()


# Pydantic models
class LocationTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    location_id: Optional[str] = Field(default=None, alias="locationId")
    company_id: Optional[str] = Field(default=None, alias="companyId")


class LocationTokenOut(BaseModel):
    accessToken: str


# API endpoints
@router.get("/auth/callback", response_class=PlainTextResponse)
async def oauth_callback(
    code: Optional[str] = None,
    db: Session = Depends(get_db),
    ghl: GHLService = Depends(get_ghl_service),
):
    """Exchange a GHL authorization code and store the agency's tokens."""
    logger.info("OAuth callback received with authorization code.")
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing authorization code.")

    try:
        token_data = await ghl.exchange_code(code)
    except GHLAPIError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)

    company_id = token_data.get("companyId")
    if not company_id:
        logger.error("companyId is missing from the GHL token response. Cannot save credentials.")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Could not identify the agency because companyId was not provided by GHL.",
        )

    CredentialStore(db).upsert(company_id, token_data)
    logger.info(f"Successfully created or updated tokens for companyId: {company_id}")
    return "Authorization successful. Tokens have been saved. You may now close this window."


@router.post("/location-token", response_model=LocationTokenOut)
async def location_token(
    request: LocationTokenRequest,
    db: Session = Depends(get_db),
    ghl: GHLService = Depends(get_ghl_service),
):
    """Issue a location-scoped access token from the stored agency credential."""
    if not request.location_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required field: locationId.")

    company_id = request.company_id or get_settings().ghl_company_id
    credential = CredentialStore(db).get(company_id)
    if not credential or not credential.access_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Agency access token not available. Please ensure OAuth authorization is complete.",
        )

    try:
        token = await ghl.get_location_access_token(company_id, request.location_id, credential.access_token)
    except GHLAPIError as e:
        raise HTTPException(status_code=e.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.message)

    return {"accessToken": token}
