import os
import logging
import argparse

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

from config import get_settings


def init_db():
    """Initialize the database and create tables."""
    from models.database import engine, Base
    import models.credentials  # noqa: F401
    import models.provisioning  # noqa: F401

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def seed_agency_credential(company_id, access_token, refresh_token, expires_in):
    """Store an agency credential obtained outside the OAuth callback."""
    from models.database import get_db_session
    from services.credential_store import CredentialStore

    if not company_id:
        logger.warning("GHL_COMPANY_ID not set; skipping credential seed")
        return
    if not access_token or not refresh_token:
        logger.warning("GHL_ACCESS_TOKEN or GHL_REFRESH_TOKEN not found in environment variables")
        return

    with get_db_session() as db:
        store = CredentialStore(db)
        if store.get(company_id):
            logger.info(f"Credentials for companyId {company_id} already exist in database")
            return
        store.upsert(company_id, {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_in": expires_in,
        })
        logger.info(f"Added credentials for companyId {company_id} to database")


def main():
    # Parse command-line arguments
    parser = argparse.ArgumentParser(description="Initialize the GHL provisioning database")
    parser.add_argument("--company-id", default=None, help="Agency companyId (defaults to GHL_COMPANY_ID)")
    parser.add_argument("--expires-in", type=int, default=86399, help="TTL in seconds of the seeded access token")
    parser.add_argument("--no-seed", action="store_true", help="Skip seeding the agency credential")
    args = parser.parse_args()

    # Initialize database
    init_db()

    # Seed agency credential
    if not args.no_seed:
        seed_agency_credential(
            args.company_id or get_settings().ghl_company_id,
            os.getenv("GHL_ACCESS_TOKEN"),
            os.getenv("GHL_REFRESH_TOKEN"),
            args.expires_in,
        )

    logger.info("Database initialization completed successfully")


if __name__ == "__main__":
    main()
