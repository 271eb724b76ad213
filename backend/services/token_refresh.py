import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from config import get_settings
from models.database import get_db_session
from services.credential_store import Credential, CredentialStore, utcnow
from services.ghl_service import GHLAPIError, GHLService

# Set up logging
logger = logging.getLogger(__name__)


@dataclass
class RefreshOutcome:
    company_id: str
    refreshed: bool
    error: Optional[str] = None


class TokenRefreshService:
    """Refreshes stored agency tokens that are about to expire."""

    def __init__(self, db: Session, ghl: GHLService, grace_seconds: Optional[int] = None):
        self.store = CredentialStore(db)
        self.ghl = ghl
        self.grace_seconds = grace_seconds if grace_seconds is not None else get_settings().token_refresh_grace_seconds

    async def refresh_if_needed(self, credential: Credential, now: Optional[datetime] = None) -> RefreshOutcome:
        now = now or utcnow()
        if not credential.needs_refresh(now, self.grace_seconds):
            logger.info(f"Token still valid for companyId {credential.company_id}")
            return RefreshOutcome(credential.company_id, refreshed=False)

        logger.info(f"Token for companyId {credential.company_id} is expiring soon. Refreshing...")
        try:
            token_data = await self.ghl.refresh_access_token(credential.refresh_token)
        except GHLAPIError as e:
            logger.error(f"Error refreshing token for companyId {credential.company_id}: {e.message}")
            return RefreshOutcome(credential.company_id, refreshed=False, error=e.message)

        self.store.update_tokens(
            credential.company_id,
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or credential.refresh_token,
            expires_in=token_data.get("expires_in", credential.expires_in),
            issued_at=utcnow(),
        )
        logger.info(f"Token refreshed successfully for companyId {credential.company_id}")
        return RefreshOutcome(credential.company_id, refreshed=True)

    async def refresh_expiring_credentials(self, now: Optional[datetime] = None) -> List[RefreshOutcome]:
        credentials = self.store.list_all()
        if not credentials:
            logger.info("No GHL OAuth credentials stored. Skipping refresh.")
            return []
        return [await self.refresh_if_needed(credential, now) for credential in credentials]


async def run_token_refresh() -> Dict[str, int]:
    """One scheduler tick: refresh every credential inside the grace window."""
    with get_db_session() as db:
        async with GHLService() as ghl:
            outcomes = await TokenRefreshService(db, ghl).refresh_expiring_credentials()

    return {
        "checked": len(outcomes),
        "refreshed": sum(1 for outcome in outcomes if outcome.refreshed),
        "failed": sum(1 for outcome in outcomes if outcome.error),
    }
