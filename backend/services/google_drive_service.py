import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from starlette.concurrency import run_in_threadpool

from config import get_settings

# Set up logging
logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"


class DriveServiceError(Exception):
    """A Google Drive call failed."""


@dataclass
class DriveFolder:
    id: str
    name: str

    @property
    def url(self) -> str:
        return f"https://drive.google.com/drive/folders/{self.id}"


def build_drive_client(creds_json: Optional[str] = None) -> Any:
    """Build a Drive v3 client from service-account JSON."""
    creds_json = creds_json or get_settings().google_creds_json
    try:
        info = json.loads(creds_json)
    except (TypeError, ValueError) as e:
        raise DriveServiceError(f"GOOGLE_CREDS_JSON is not valid JSON: {str(e)}") from e

    credentials = service_account.Credentials.from_service_account_info(info, scopes=DRIVE_SCOPES)
    return build("drive", "v3", credentials=credentials, cache_discovery=False)


class GoogleDriveService:
    """Creates and shares client asset folders in Google Drive.

    The Google client is blocking, so every call is pushed to the threadpool
    to keep the event loop free.
    """

    def __init__(self, drive: Any = None):
        self._drive = drive

    @property
    def drive(self) -> Any:
        if self._drive is None:
            self._drive = build_drive_client()
        return self._drive

    def _create_folder(self, name: str, parent_folder_id: str, share_with: str) -> DriveFolder:
        folder = self.drive.files().create(
            body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_folder_id]},
            fields="id",
        ).execute()
        folder_id = folder["id"]
        logger.info(f"Google Drive folder created with ID: {folder_id}")

        self.drive.permissions().create(
            fileId=folder_id,
            body={"type": "user", "role": "writer", "emailAddress": share_with},
            fields="id",
            sendNotificationEmail=False,
        ).execute()
        logger.info(f"Google Drive folder {folder_id} shared with {share_with}")
        return DriveFolder(id=folder_id, name=name)

    async def create_folder(self, name: str, parent_folder_id: str, share_with: str) -> DriveFolder:
        """Create ``name`` under ``parent_folder_id`` and grant writer access to ``share_with``."""
        try:
            return await run_in_threadpool(self._create_folder, name, parent_folder_id, share_with)
        except HttpError as e:
            logger.error(f"Error creating or sharing Google Drive folder: {str(e)}")
            raise DriveServiceError(f"Google Drive Folder Creation Failed: {str(e)}") from e

    async def delete_folder(self, folder_id: str) -> None:
        try:
            await run_in_threadpool(lambda: self.drive.files().delete(fileId=folder_id).execute())
            logger.info(f"Google Drive folder {folder_id} deleted")
        except HttpError as e:
            logger.error(f"Error deleting Google Drive folder {folder_id}: {str(e)}")
            raise DriveServiceError(f"Google Drive Folder Deletion Failed: {str(e)}") from e
