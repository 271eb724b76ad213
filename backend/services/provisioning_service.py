import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from config import Settings, get_settings
from models.database import get_db_session
from models.provisioning import ProvisioningRun, RUN_FAILED, RUN_IN_PROGRESS, RUN_SUCCEEDED
from services.credential_store import CredentialStore, as_utc, utcnow
from services.ghl_service import GHLAPIError, GHLService, find_client_portal_page
from services.google_drive_service import DriveFolder, GoogleDriveService
from services.progress_stream import ProgressStream
from utils.readiness import ReadinessTimeout, poll_until
from utils.security import generate_initial_password

# Set up logging
logger = logging.getLogger(__name__)

COMMAND_CENTER_FIELD = "Command Center Link Ending"
CLIENT_ASSETS_FIELD = "Client Assets Folder Link"

FIELDS_TO_SYNC = [
    "Agency Color 1",
    "Agency Color 2",
    "Agency Dark Logo",
    "Agency Light Logo",
    "Agency Name",
    "Agency Phone Number",
    "Agency Support Email",
    COMMAND_CENTER_FIELD,
    CLIENT_ASSETS_FIELD,
]

USER_PERMISSIONS = {
    "campaignsEnabled": True,
    "campaignsReadOnly": True,
    "contactsEnabled": True,
    "workflowsEnabled": True,
    "workflowsReadOnly": True,
    "triggersEnabled": True,
    "funnelsEnabled": True,
    "websitesEnabled": True,
    "opportunitiesEnabled": True,
    "dashboardStatsEnabled": True,
    "bulkRequestsEnabled": True,
    "appointmentsEnabled": True,
    "reviewsEnabled": True,
    "onlineListingsEnabled": True,
    "phoneCallEnabled": True,
    "conversationsEnabled": True,
    "assignedDataOnly": True,
    "adwordsReportingEnabled": True,
    "membershipEnabled": True,
    "facebookAdsReportingEnabled": True,
    "attributionsReportingEnabled": True,
    "settingsEnabled": True,
    "tagsEnabled": True,
    "leadValueEnabled": True,
    "marketingEnabled": True,
    "agentReportingEnabled": True,
    "botService": True,
    "socialPlanner": True,
    "bloggingEnabled": True,
    "invoiceEnabled": True,
    "affiliateManagerEnabled": True,
    "contentAiEnabled": True,
    "refundsEnabled": True,
    "recordPaymentEnabled": True,
    "cancelSubscriptionEnabled": True,
    "paymentsEnabled": True,
    "communitiesEnabled": True,
    "exportPaymentsEnabled": True,
}

# Progress steps, in emission order
STEP_VALIDATED = "validated"
STEP_UNIQUE = "unique"
STEP_ACCOUNT_CREATED = "account_created"
STEP_USER_CREATED = "user_created"
STEP_COMMAND_CENTER_RESOLVED = "command_center_resolved"
STEP_FOLDER_CREATED = "folder_created"
STEP_FIELDS_SYNCED = "fields_synced"

UNEXPECTED_ERROR = "An unexpected error occurred during account creation."
RUN_IN_PROGRESS_REASON = "A provisioning run for this email is already in progress."


class ProvisioningRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, coerce_numbers_to_str=True)

    business_name: str = Field(min_length=1, validation_alias=AliasChoices("business_name", "Business Name"))
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address1: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    country: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    company_id: Optional[str] = None


class ProvisioningError(Exception):
    """Terminal workflow failure; ``reason`` is shown to the client."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class ProvisionedAccount:
    id: str
    name: str
    email: str


@dataclass
class CustomField:
    id: str
    name: str
    value: Any


def index_custom_fields(values: List[Dict[str, Any]]) -> Dict[str, CustomField]:
    """Map allow-listed custom values by exact name."""
    fields = {}
    for item in values:
        name = item.get("name")
        if name in FIELDS_TO_SYNC:
            fields[name] = CustomField(id=item.get("id"), name=name, value=item.get("value"))
    return fields


MISSING_ERROR_TYPES = {"missing", "string_too_short"}


def _field_errors(error: ValidationError) -> Tuple[List[str], List[str]]:
    """Split validation errors into (missing, invalid) field names.

    Absent, null and blank values count as missing; anything else that fails
    (a nested object where text is expected, say) is invalid.
    """
    missing, invalid = [], []
    for err in error.errors():
        if not err.get("loc"):
            continue
        name = str(err["loc"][0])
        if err["type"] in MISSING_ERROR_TYPES or err.get("input") is None:
            missing.append(name)
        else:
            invalid.append(name)
    return missing, invalid


class AccountProvisioningService:
    """Drives one account creation from request to synced custom values.

    Each milestone is reported on the progress stream. A terminal failure
    undoes whatever was already created (unless compensation is disabled)
    and ends the stream with a failure event.
    """

    def __init__(
        self,
        db: Session,
        ghl: GHLService,
        drive: GoogleDriveService,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.ghl = ghl
        self.drive = drive
        self.settings = settings or get_settings()
        self.store = CredentialStore(db)
        self._run: Optional[ProvisioningRun] = None
        self._compensations: List[Tuple[str, Callable[[], Awaitable[Any]]]] = []

    async def run(self, payload: Any, stream: ProgressStream) -> None:
        try:
            result = await self._provision(payload, stream)
        except ProvisioningError as e:
            logger.error(f"Account creation failed: {e.reason}")
            await self._compensate()
            await run_in_threadpool(self._finish_run, RUN_FAILED, e.reason)
            stream.fail(e.reason)
            return
        except GHLAPIError as e:
            logger.error(f"Account creation failed: {e.message}")
            await self._compensate()
            await run_in_threadpool(self._finish_run, RUN_FAILED, e.message)
            stream.fail(e.message)
            return
        except Exception as e:
            logger.exception("Critical error in account creation flow")
            await self._compensate()
            await run_in_threadpool(self._finish_run, RUN_FAILED, str(e) or UNEXPECTED_ERROR)
            stream.fail(str(e) or UNEXPECTED_ERROR)
            return

        await run_in_threadpool(self._finish_run, RUN_SUCCEEDED)
        stream.succeed("Great job! Your account is now active and ready for action.", result)

    async def _provision(self, payload: Any, stream: ProgressStream) -> Dict[str, Any]:
        # Step 1: validate input
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            logger.error(f"Request body is not a JSON object: {type(payload).__name__}")
            raise ProvisioningError("Request body must be a JSON object.")
        try:
            request = ProvisioningRequest.model_validate(payload)
        except ValidationError as e:
            missing, invalid = _field_errors(e)
            logger.error(f"Invalid request body. Missing: {missing}, invalid: {invalid}")
            if missing:
                raise ProvisioningError(f"Missing required fields: {', '.join(missing)}.")
            if invalid:
                raise ProvisioningError(f"Invalid values for fields: {', '.join(invalid)}.")
            raise ProvisioningError("Missing required fields.")
        stream.progress(STEP_VALIDATED, "Validating your details...")

        # Step 2: agency credential
        company_id = request.company_id or self.settings.ghl_company_id
        credential = await run_in_threadpool(self.store.get, company_id)
        if not credential or not credential.access_token:
            raise ProvisioningError("Access token not available. Please authorize first.")
        agency_token = credential.access_token

        # Step 3: uniqueness
        logger.info(f"Checking for existing user with email: {request.email}")
        if await self.ghl.check_user_exists(company_id, request.email, agency_token):
            raise ProvisioningError("User already exists.")
        await run_in_threadpool(self._claim_run, company_id, request)
        stream.progress(STEP_UNIQUE, "Your details check out. Creating your new marketing account...")

        # Step 4: account (location)
        account = await self._create_account(company_id, agency_token, request)
        stream.progress(STEP_ACCOUNT_CREATED, "Welcome aboard! Your journey to smarter marketing starts here.")

        # Step 5: wait until the platform can reference the new account
        await self._wait_for(
            lambda: self.ghl.get_location(account.id, agency_token),
            bool,
            f"account {account.id}",
            "Your new account did not finish provisioning in time.",
        )

        # Step 6: user
        user_id = await self._create_user(company_id, agency_token, request, account)
        stream.progress(STEP_USER_CREATED, "You're one step closer to automating your marketing!")

        # Step 7: command center page
        location_token = await self._wait_for(
            lambda: self.ghl.get_location_access_token(company_id, account.id, agency_token),
            bool,
            f"location token for {account.id}",
            f"Could not obtain an access token for account {account.id}.",
        )
        funnels = await self._wait_for(
            lambda: self.ghl.get_funnels(account.id, location_token),
            lambda result: find_client_portal_page(result) is not None,
            f"Client Portal page for {account.id}",
            "Client Portal step or page not found.",
        )
        page_id = find_client_portal_page(funnels)
        logger.info(f"Command Center page ID for {account.id}: {page_id}")
        stream.progress(STEP_COMMAND_CENTER_RESOLVED, "Your command center is configured.")

        # Step 8: Google Drive folder
        folder = await self._create_folder(account)
        stream.progress(STEP_FOLDER_CREATED, "Google Drive folder created successfully.")

        # Step 9: custom values
        synced, skipped = await self._sync_custom_fields(
            company_id, agency_token, account, location_token, page_id, folder
        )
        stream.progress(STEP_FIELDS_SYNCED, "Success! Your details are saved, and Clingy is ready to roll.")

        self._compensations.clear()
        return {
            "location_id": account.id,
            "name": account.name,
            "email": account.email,
            "user_id": user_id,
            "folder_id": folder.id,
            "folder_url": folder.url,
            "command_center_page_id": page_id,
            "synced_fields": synced,
            "skipped_fields": skipped,
        }

    async def _wait_for(self, fetch, is_ready, description: str, failure_reason: str):
        try:
            return await poll_until(
                fetch,
                is_ready,
                timeout=self.settings.provisioning_ready_timeout,
                interval=self.settings.provisioning_poll_interval,
                retry_on=(GHLAPIError,),
                description=description,
            )
        except ReadinessTimeout as e:
            logger.error(f"{failure_reason} Last error: {e.last_error}")
            raise ProvisioningError(failure_reason) from e

    def _claim_run(self, company_id: str, request: ProvisioningRequest) -> None:
        """Reserve (company_id, email) so concurrent runs cannot both create it.

        A failed run may be retried. An in-progress claim whose last update is
        older than ``PROVISIONING_CLAIM_TTL`` is presumed abandoned and taken
        over. Takeovers bump ``attempt`` conditionally, so only one of two
        racing runs wins.
        """
        run = self.db.query(ProvisioningRun).filter(
            ProvisioningRun.company_id == company_id,
            ProvisioningRun.email == request.email,
        ).first()

        if run is None:
            run = ProvisioningRun(
                company_id=company_id,
                email=request.email,
                business_name=request.business_name,
                status=RUN_IN_PROGRESS,
                attempt=1,
            )
            self.db.add(run)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise ProvisioningError(RUN_IN_PROGRESS_REASON)
            self._run = run
            return

        seen_attempt = run.attempt
        if run.status == RUN_SUCCEEDED:
            raise ProvisioningError("An account has already been provisioned for this email.")
        if run.status == RUN_IN_PROGRESS:
            if not self._claim_expired(run):
                raise ProvisioningError(RUN_IN_PROGRESS_REASON)
            logger.warning(
                f"Taking over abandoned provisioning run {run.id} for {request.email} "
                f"(attempt {seen_attempt}, location {run.location_id})"
            )

        taken = self.db.query(ProvisioningRun).filter(
            ProvisioningRun.id == run.id,
            ProvisioningRun.attempt == seen_attempt,
        ).update(
            {
                "attempt": seen_attempt + 1,
                "business_name": request.business_name,
                "status": RUN_IN_PROGRESS,
                "location_id": None,
                "user_id": None,
                "folder_id": None,
                "error": None,
                "updated_at": utcnow(),
            },
            synchronize_session=False,
        )
        self.db.commit()
        if not taken:
            raise ProvisioningError(RUN_IN_PROGRESS_REASON)
        self.db.refresh(run)
        self._run = run

    def _claim_expired(self, run: ProvisioningRun) -> bool:
        last_seen = run.updated_at or run.created_at
        if last_seen is None:
            return True
        age = utcnow() - as_utc(last_seen)
        return age >= timedelta(seconds=self.settings.provisioning_claim_ttl)

    def _finish_run(self, status: str, error: Optional[str] = None) -> None:
        if self._run is None:
            return
        self._run.status = status
        self._run.error = error
        self.db.commit()

    def _record(self, **fields) -> None:
        if self._run is None:
            return
        for name, value in fields.items():
            setattr(self._run, name, value)
        self.db.commit()

    async def _create_account(
        self, company_id: str, agency_token: str, request: ProvisioningRequest
    ) -> ProvisionedAccount:
        account_data = {
            "name": request.business_name,
            "phone": request.phone,
            "companyId": company_id,
            "address": request.address1,
            "city": request.city,
            "state": request.state,
            "country": request.country,
            "postalCode": request.postal_code,
            "prospectInfo": {
                "firstName": request.first_name,
                "lastName": request.last_name,
                "email": request.email,
            },
            "snapshotId": self.settings.ghl_snapshot_id,
        }
        location = await self.ghl.create_location(agency_token, account_data)
        location_id = location.get("id")
        if not location_id:
            raise ProvisioningError("Account creation returned no account ID.")

        account = ProvisionedAccount(
            id=location_id,
            name=location.get("name") or request.business_name,
            email=location.get("email") or request.email,
        )
        await run_in_threadpool(self._record, location_id=account.id)
        self._compensations.append(
            (f"delete account {account.id}", lambda: self.ghl.delete_location(account.id, agency_token))
        )
        return account

    async def _create_user(
        self,
        company_id: str,
        agency_token: str,
        request: ProvisioningRequest,
        account: ProvisionedAccount,
    ) -> Optional[str]:
        # The user sets a real password through the platform's reset flow
        payload = {
            "companyId": company_id,
            "firstName": request.first_name,
            "lastName": request.last_name,
            "email": request.email,
            "password": generate_initial_password(),
            "phone": request.phone,
            "type": "account",
            "role": "admin",
            "locationIds": [account.id],
            "permissions": USER_PERMISSIONS,
        }
        user = await self.ghl.create_user(agency_token, payload)
        user_id = user.get("id")
        await run_in_threadpool(self._record, user_id=user_id)
        if user_id:
            self._compensations.append(
                (f"delete user {user_id}", lambda: self.ghl.delete_user(user_id, agency_token))
            )
        return user_id

    async def _create_folder(self, account: ProvisionedAccount) -> DriveFolder:
        try:
            folder = await self.drive.create_folder(
                account.name,
                self.settings.google_drive_parent_folder_id,
                account.email,
            )
        except Exception as e:
            logger.error(f"Error during Google Drive folder creation: {str(e)}")
            raise ProvisioningError("Error during Google Drive folder creation.") from e

        await run_in_threadpool(self._record, folder_id=folder.id)
        self._compensations.append(
            (f"delete folder {folder.id}", lambda: self.drive.delete_folder(folder.id))
        )
        return folder

    async def _fetch_new_account_fields(self, account: ProvisionedAccount, location_token: str) -> List[Dict[str, Any]]:
        try:
            return await poll_until(
                lambda: self.ghl.get_custom_values(account.id, location_token),
                lambda values: bool(index_custom_fields(values)),
                timeout=self.settings.provisioning_ready_timeout,
                interval=self.settings.provisioning_poll_interval,
                retry_on=(GHLAPIError,),
                description=f"custom values for {account.id}",
            )
        except ReadinessTimeout as e:
            if e.last_error is not None:
                raise ProvisioningError(f"Could not read custom values for account {account.id}.") from e
            logger.warning(f"No synchronized custom values exist on account {account.id}")
            return []

    async def _sync_custom_fields(
        self,
        company_id: str,
        agency_token: str,
        account: ProvisionedAccount,
        location_token: str,
        page_id: str,
        folder: DriveFolder,
    ) -> Tuple[List[str], List[str]]:
        template_location_id = self.settings.ghl_parent_location_id
        template_token = await self.ghl.get_location_access_token(company_id, template_location_id, agency_token)
        template_fields = index_custom_fields(
            await self.ghl.get_custom_values(template_location_id, template_token)
        )
        account_fields = index_custom_fields(await self._fetch_new_account_fields(account, location_token))

        synced: List[str] = []
        skipped: List[str] = []

        async def update(name: str, value: Any) -> None:
            field = account_fields.get(name)
            if field is None:
                logger.info(f'No custom field "{name}" on account {account.id}')
                skipped.append(name)
                return
            try:
                await self.ghl.update_custom_value(account.id, field.id, name, value, location_token)
                synced.append(name)
            except GHLAPIError as e:
                logger.error(f'Skipping update for "{name}" due to error: {e.message}')
                skipped.append(name)

        for name in FIELDS_TO_SYNC:
            if name in (COMMAND_CENTER_FIELD, CLIENT_ASSETS_FIELD):
                continue
            template_field = template_fields.get(name)
            if template_field is None:
                logger.info(f'Template location has no custom field "{name}"')
                skipped.append(name)
                continue
            await update(name, template_field.value)

        await update(COMMAND_CENTER_FIELD, f"/{page_id}")
        await update(CLIENT_ASSETS_FIELD, folder.url)
        return synced, skipped

    async def _compensate(self) -> None:
        if not self._compensations:
            return
        if not self.settings.provisioning_compensate:
            logger.warning(f"Compensation disabled; leaving {len(self._compensations)} created resources in place")
            self._compensations.clear()
            return

        while self._compensations:
            description, action = self._compensations.pop()
            try:
                await action()
                logger.info(f"Rolled back: {description}")
            except Exception as e:
                logger.error(f"Rollback step failed ({description}): {str(e)}")


_background_runs: Set[asyncio.Task] = set()


async def provision_account(payload: Any, stream: ProgressStream) -> None:
    """Run one provisioning workflow with its own session and clients."""
    try:
        with get_db_session() as db:
            async with GHLService() as ghl:
                service = AccountProvisioningService(db, ghl, GoogleDriveService())
                await service.run(payload, stream)
    except Exception:
        logger.exception("Provisioning run crashed")
    finally:
        if not stream.closed:
            stream.fail(UNEXPECTED_ERROR)


def start_provisioning(payload: Any, stream: ProgressStream) -> asyncio.Task:
    """Start a run detached from the request, so a client disconnect does not cancel it."""
    task = asyncio.create_task(provision_account(payload, stream))
    _background_runs.add(task)
    task.add_done_callback(_background_runs.discard)
    return task
