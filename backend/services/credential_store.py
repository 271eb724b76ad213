import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from models.credentials import OAuthCredential
from utils.security import encrypt_value, decrypt_value

# Set up logging
logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Credential:
    """Decrypted view of one agency's OAuth credential."""

    company_id: str
    access_token: str
    refresh_token: str
    expires_in: int
    issued_at: datetime
    user_id: Optional[str] = None
    location_id: Optional[str] = None

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    def needs_refresh(self, now: datetime, grace_seconds: int = 300) -> bool:
        """True once ``now`` is inside the grace window before expiry."""
        return now >= self.expires_at - timedelta(seconds=grace_seconds)


class CredentialStore:
    """Keyed storage of OAuth credentials, one row per company_id."""

    def __init__(self, db: Session):
        self.db = db

    def _get_row(self, company_id: str) -> Optional[OAuthCredential]:
        return self.db.query(OAuthCredential).filter(
            OAuthCredential.company_id == company_id
        ).first()

    @staticmethod
    def _to_credential(row: OAuthCredential) -> Credential:
        return Credential(
            company_id=row.company_id,
            access_token=decrypt_value(row.encrypted_access_token),
            refresh_token=decrypt_value(row.encrypted_refresh_token),
            expires_in=row.expires_in,
            issued_at=as_utc(row.issued_at),
            user_id=row.user_id,
            location_id=row.location_id,
        )

    def get(self, company_id: str) -> Optional[Credential]:
        """Get the credential for a company, or None."""
        if not company_id:
            return None
        row = self._get_row(company_id)
        return self._to_credential(row) if row else None

    def list_all(self) -> List[Credential]:
        rows = self.db.query(OAuthCredential).order_by(OAuthCredential.company_id).all()
        return [self._to_credential(row) for row in rows]

    def upsert(self, company_id: str, token_data: Dict[str, Any], issued_at: Optional[datetime] = None) -> Credential:
        """Create or overwrite the credential for ``company_id``.

        ``token_data`` is the platform's token response (access_token,
        refresh_token, expires_in, userId, locationId).
        """
        if not company_id:
            raise ValueError("company_id is required")

        issued_at = issued_at or utcnow()
        row = self._get_row(company_id)
        if row is None:
            row = OAuthCredential(company_id=company_id)
            self.db.add(row)
            logger.info(f"Creating credentials for companyId {company_id}")
        else:
            logger.info(f"Overwriting credentials for companyId {company_id}")

        row.encrypted_access_token = encrypt_value(token_data["access_token"])
        row.encrypted_refresh_token = encrypt_value(token_data["refresh_token"])
        row.expires_in = int(token_data.get("expires_in", 0))
        row.user_id = token_data.get("userId")
        row.location_id = token_data.get("locationId")
        row.issued_at = issued_at

        self.db.commit()
        self.db.refresh(row)
        return self._to_credential(row)

    def update_tokens(
        self,
        company_id: str,
        access_token: str,
        refresh_token: str,
        expires_in: int,
        issued_at: Optional[datetime] = None,
    ) -> Credential:
        """Overwrite tokens in place after a refresh."""
        row = self._get_row(company_id)
        if row is None:
            raise LookupError(f"No credentials stored for companyId {company_id}")

        row.encrypted_access_token = encrypt_value(access_token)
        row.encrypted_refresh_token = encrypt_value(refresh_token)
        row.expires_in = int(expires_in)
        row.issued_at = issued_at or utcnow()

        self.db.commit()
        self.db.refresh(row)
        return self._to_credential(row)
