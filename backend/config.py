import os
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Load environment variables
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv()  # Try to load from default locations


def _get_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


class Settings:
    """Process-wide configuration, read once from the environment."""

    def __init__(self):
        # GoHighLevel
        self.ghl_api_domain = os.getenv("GHL_API_DOMAIN", "https://services.leadconnectorhq.com").rstrip("/")
        self.ghl_client_id = os.getenv("GHL_CLIENT_ID", "")
        self.ghl_client_secret = os.getenv("GHL_CLIENT_SECRET", "")
        self.ghl_company_id = os.getenv("GHL_COMPANY_ID", "")
        self.ghl_snapshot_id = os.getenv("GHL_SNAPSHOT_ID", "")
        self.ghl_parent_location_id = os.getenv("GHL_PARENT_LOCATION_ID", "")
        self.ghl_http_timeout = float(os.getenv("GHL_HTTP_TIMEOUT", 30))

        # Google Drive
        self.google_drive_parent_folder_id = os.getenv("GOOGLE_DRIVE_PARENT_FOLDER_ID", "")
        self.google_creds_json = os.getenv("GOOGLE_CREDS_JSON", "")

        # Provisioning workflow
        self.provisioning_ready_timeout = float(os.getenv("PROVISIONING_READY_TIMEOUT", 90))
        self.provisioning_poll_interval = float(os.getenv("PROVISIONING_POLL_INTERVAL", 2))
        self.provisioning_compensate = _get_bool("PROVISIONING_COMPENSATE", True)
        # An in-progress claim older than this is presumed abandoned
        self.provisioning_claim_ttl = float(os.getenv("PROVISIONING_CLAIM_TTL", 900))

        # Token refresh
        self.token_refresh_grace_seconds = int(os.getenv("TOKEN_REFRESH_GRACE_SECONDS", 300))

        # Infrastructure
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./app.db")
        self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.allowed_origins: List[str] = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        self.api_port = int(os.getenv("API_PORT", 8000))
        self.debug = _get_bool("DEBUG", False)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
