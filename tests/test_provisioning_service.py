"""Tests for the account provisioning workflow."""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import update

from models.provisioning import ProvisioningRun, RUN_FAILED, RUN_IN_PROGRESS, RUN_SUCCEEDED
from services.credential_store import utcnow
from services.ghl_service import GHLAPIError
from services.google_drive_service import DriveServiceError
from services.progress_stream import EVENT_FAILURE, EVENT_PROGRESS, EVENT_SUCCESS, ProgressStream
from services.provisioning_service import (
    AccountProvisioningService,
    CLIENT_ASSETS_FIELD,
    COMMAND_CENTER_FIELD,
    FIELDS_TO_SYNC,
    ProvisioningError,
    ProvisioningRequest,
    index_custom_fields,
)

from fakes import NEW_LOCATION_ID, TEMPLATE_LOCATION_ID


def make_request(**overrides):
    payload = {
        "business_name": "Acme Roofing",
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane@acme.test",
        "phone": "+15551234567",
        "address1": "1 Main St",
        "city": "Springfield",
        "state": "IL",
        "country": "US",
        "postal_code": "62701",
    }
    payload.update(overrides)
    return payload


async def run_workflow(db_session, ghl, drive, payload):
    stream = ProgressStream()
    service = AccountProvisioningService(db_session, ghl, drive)
    await service.run(payload, stream)
    return stream


def steps(stream):
    return [event.step if event.type == EVENT_PROGRESS else event.type for event in stream.events]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestSuccessfulRun:

    @pytest.mark.asyncio
    async def test_emits_steps_in_order(self, db_session, agency_credential, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == [
            "validated",
            "unique",
            "account_created",
            "user_created",
            "command_center_resolved",
            "folder_created",
            "fields_synced",
            EVENT_SUCCESS,
        ]
        assert stream.closed

    @pytest.mark.asyncio
    async def test_success_event_carries_account_id(self, db_session, agency_credential, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request())

        final = stream.events[-1]
        assert final.type == EVENT_SUCCESS
        assert final.result["location_id"] == NEW_LOCATION_ID
        assert final.result["folder_url"] == "https://drive.google.com/drive/folders/folder-1"
        assert final.result["command_center_page_id"] == "page-portal"
        assert ("get_location", NEW_LOCATION_ID) in ghl.calls

    @pytest.mark.asyncio
    async def test_account_created_from_request(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        account_data = next(call[1] for call in ghl.calls if call[0] == "create_location")
        assert account_data["name"] == "Acme Roofing"
        assert account_data["companyId"] == "agency-1"
        assert account_data["snapshotId"] == "snapshot-1"
        assert account_data["postalCode"] == "62701"
        assert account_data["prospectInfo"] == {
            "firstName": "Jane",
            "lastName": "Doe",
            "email": "jane@acme.test",
        }

    @pytest.mark.asyncio
    async def test_user_created_as_admin_of_new_account(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        payload = next(call[1] for call in ghl.calls if call[0] == "create_user")
        assert payload["role"] == "admin"
        assert payload["type"] == "account"
        assert payload["locationIds"] == [NEW_LOCATION_ID]
        assert payload["permissions"]["contactsEnabled"] is True

    @pytest.mark.asyncio
    async def test_initial_password_is_not_derived_from_address(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        password = next(call[1] for call in ghl.calls if call[0] == "create_user")["password"]
        assert "US62701" not in password
        assert len(password) >= 16

    @pytest.mark.asyncio
    async def test_folder_named_after_account_and_shared(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        assert drive.created == [("Acme Roofing", "drive-parent", "jane@acme.test")]

    @pytest.mark.asyncio
    async def test_run_recorded_as_succeeded(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        run = db_session.query(ProvisioningRun).one()
        assert run.status == RUN_SUCCEEDED
        assert run.location_id == NEW_LOCATION_ID
        assert run.user_id == "user-new"
        assert run.folder_id == "folder-1"

    @pytest.mark.asyncio
    async def test_database_work_runs_off_the_event_loop(self, db_session, agency_credential, ghl, drive):
        loop_thread = threading.get_ident()
        threads = []
        service = AccountProvisioningService(db_session, ghl, drive)

        def on_worker(method):
            def wrapper(*args, **kwargs):
                threads.append((method.__name__, threading.get_ident()))
                return method(*args, **kwargs)
            return wrapper

        service._claim_run = on_worker(service._claim_run)
        service._record = on_worker(service._record)
        service._finish_run = on_worker(service._finish_run)

        stream = ProgressStream()
        await service.run(make_request(), stream)

        assert stream.events[-1].type == EVENT_SUCCESS
        assert [name for name, _ in threads] == ["_claim_run", "_record", "_record", "_record", "_finish_run"]
        assert all(ident != loop_thread for _, ident in threads)

    @pytest.mark.asyncio
    async def test_accepts_business_name_with_space(self, db_session, agency_credential, ghl, drive):
        payload = make_request()
        payload["Business Name"] = payload.pop("business_name")

        stream = await run_workflow(db_session, ghl, drive, payload)

        assert stream.events[-1].type == EVENT_SUCCESS

    @pytest.mark.asyncio
    async def test_company_id_from_request(self, db_session, store, ghl, drive):
        store.upsert("agency-2", {"access_token": "a2", "refresh_token": "r2", "expires_in": 3600})

        stream = await run_workflow(db_session, ghl, drive, make_request(company_id="agency-2"))

        assert stream.events[-1].type == EVENT_SUCCESS
        assert ("check_user_exists", "agency-2", "jane@acme.test") in ghl.calls


# ---------------------------------------------------------------------------
# Early failures
# ---------------------------------------------------------------------------

class TestPreconditions:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", [
        "business_name", "first_name", "last_name", "email", "phone",
        "address1", "city", "state", "country", "postal_code",
    ])
    async def test_missing_field_fails_without_external_calls(self, db_session, agency_credential, ghl, drive, field):
        payload = make_request()
        del payload[field]

        stream = await run_workflow(db_session, ghl, drive, payload)

        assert len(stream.events) == 1
        assert stream.events[0].type == EVENT_FAILURE
        assert field in stream.events[0].reason
        assert ghl.calls == []
        assert drive.created == []

    @pytest.mark.asyncio
    async def test_blank_field_is_missing(self, db_session, agency_credential, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request(city="   "))

        assert [event.type for event in stream.events] == [EVENT_FAILURE]
        assert ghl.calls == []

    @pytest.mark.asyncio
    async def test_null_field_is_missing(self, db_session, agency_credential, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request(state=None))

        assert [event.type for event in stream.events] == [EVENT_FAILURE]
        assert stream.events[0].reason == "Missing required fields: state."

    @pytest.mark.asyncio
    async def test_numeric_postal_code_and_phone_accepted(self, db_session, agency_credential, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request(postal_code=73301, phone=15551234567))

        assert stream.events[-1].type == EVENT_SUCCESS
        account_data = next(call[1] for call in ghl.calls if call[0] == "create_location")
        assert account_data["postalCode"] == "73301"
        assert account_data["phone"] == "15551234567"
        user_payload = next(call[1] for call in ghl.calls if call[0] == "create_user")
        assert user_payload["phone"] == "15551234567"

    @pytest.mark.asyncio
    async def test_wrong_shape_reported_as_invalid(self, db_session, agency_credential, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request(city={"name": "Springfield"}))

        assert [event.type for event in stream.events] == [EVENT_FAILURE]
        assert stream.events[0].reason == "Invalid values for fields: city."
        assert ghl.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [[], ["business_name"], "Acme Roofing", 42])
    async def test_body_must_be_an_object(self, db_session, agency_credential, ghl, drive, payload):
        stream = await run_workflow(db_session, ghl, drive, payload)

        assert [event.type for event in stream.events] == [EVENT_FAILURE]
        assert stream.events[0].reason == "Request body must be a JSON object."
        assert ghl.calls == []

    @pytest.mark.asyncio
    async def test_missing_credential(self, db_session, ghl, drive):
        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == ["validated", EVENT_FAILURE]
        assert stream.events[-1].reason == "Access token not available. Please authorize first."
        assert ghl.calls == []

    @pytest.mark.asyncio
    async def test_existing_user(self, db_session, agency_credential, ghl, drive):
        ghl.user_exists = True

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == ["validated", EVENT_FAILURE]
        assert stream.events[-1].reason == "User already exists."
        assert "create_location" not in ghl.call_names()
        assert db_session.query(ProvisioningRun).count() == 0

    @pytest.mark.asyncio
    async def test_concurrent_run_for_same_email_is_rejected(self, db_session, agency_credential, ghl, drive):
        db_session.add(ProvisioningRun(company_id="agency-1", email="jane@acme.test", status=RUN_IN_PROGRESS))
        db_session.commit()

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == ["validated", EVENT_FAILURE]
        assert "already in progress" in stream.events[-1].reason
        assert "create_location" not in ghl.call_names()
        assert db_session.query(ProvisioningRun).one().status == RUN_IN_PROGRESS

    @pytest.mark.asyncio
    async def test_failed_run_can_be_retried(self, db_session, agency_credential, ghl, drive):
        db_session.add(ProvisioningRun(company_id="agency-1", email="jane@acme.test", status=RUN_FAILED))
        db_session.commit()

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_SUCCESS
        run = db_session.query(ProvisioningRun).one()
        assert run.status == RUN_SUCCEEDED
        assert run.attempt == 2

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over(self, db_session, agency_credential, ghl, drive):
        db_session.add(ProvisioningRun(
            company_id="agency-1",
            email="jane@acme.test",
            status=RUN_IN_PROGRESS,
            location_id="loc-orphan",
            created_at=utcnow() - timedelta(hours=2),
        ))
        db_session.commit()

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_SUCCESS
        run = db_session.query(ProvisioningRun).one()
        assert run.status == RUN_SUCCEEDED
        assert run.attempt == 2
        assert run.location_id == NEW_LOCATION_ID

    @pytest.mark.asyncio
    async def test_claim_lease_is_configurable(self, db_session, agency_credential, ghl, drive, monkeypatch):
        monkeypatch.setenv("PROVISIONING_CLAIM_TTL", "0")
        db_session.add(ProvisioningRun(company_id="agency-1", email="jane@acme.test", status=RUN_IN_PROGRESS))
        db_session.commit()

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_SUCCESS

    @pytest.mark.asyncio
    async def test_succeeded_run_is_not_repeated(self, db_session, agency_credential, ghl, drive):
        db_session.add(ProvisioningRun(
            company_id="agency-1",
            email="jane@acme.test",
            status=RUN_SUCCEEDED,
            created_at=utcnow() - timedelta(days=2),
        ))
        db_session.commit()

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == ["validated", EVENT_FAILURE]
        assert "already been provisioned" in stream.events[-1].reason
        assert "create_location" not in ghl.call_names()

    def test_takeover_lost_to_another_run(self, db_session, agency_credential, ghl, drive):
        db_session.add(ProvisioningRun(company_id="agency-1", email="jane@acme.test", status=RUN_FAILED))
        db_session.commit()
        service = AccountProvisioningService(db_session, ghl, drive)
        request = ProvisioningRequest.model_validate(make_request())
        original_query = db_session.query
        calls = []

        def racing_query(*entities):
            calls.append(entities)
            if len(calls) == 2:
                # Another run takes the claim between our read and our update
                db_session.execute(
                    update(ProvisioningRun)
                    .where(ProvisioningRun.email == "jane@acme.test")
                    .values(attempt=ProvisioningRun.attempt + 1)
                )
                db_session.commit()
            return original_query(*entities)

        db_session.query = racing_query
        try:
            with pytest.raises(ProvisioningError, match="already in progress"):
                service._claim_run("agency-1", request)
        finally:
            db_session.query = original_query


# ---------------------------------------------------------------------------
# Step failures and compensation
# ---------------------------------------------------------------------------

class TestStepFailures:

    @pytest.mark.asyncio
    async def test_account_creation_failure(self, db_session, agency_credential, ghl, drive):
        ghl.fail_on["create_location"] = GHLAPIError("GHL Account Creation Failed: bad snapshot", 422)

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == ["validated", "unique", EVENT_FAILURE]
        assert stream.events[-1].reason == "GHL Account Creation Failed: bad snapshot"
        assert db_session.query(ProvisioningRun).one().status == RUN_FAILED

    @pytest.mark.asyncio
    async def test_waits_for_account_to_become_visible(self, db_session, agency_credential, ghl, drive):
        ghl.location_lookup_failures = 2

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_SUCCESS
        assert ghl.call_names().count("get_location") == 3

    @pytest.mark.asyncio
    async def test_account_never_visible_fails_and_rolls_back(self, db_session, agency_credential, ghl, drive):
        ghl.location_lookup_failures = 10_000

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream) == ["validated", "unique", "account_created", EVENT_FAILURE]
        assert stream.events[-1].reason == "Your new account did not finish provisioning in time."
        assert "create_user" not in ghl.call_names()
        assert ("delete_location", NEW_LOCATION_ID) in ghl.calls

    @pytest.mark.asyncio
    async def test_missing_client_portal_fails(self, db_session, agency_credential, ghl, drive):
        ghl.funnels = [{"steps": [{"name": "Landing", "pages": ["page-landing"]}]}]

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream)[-2:] == ["user_created", EVENT_FAILURE]
        assert stream.events[-1].reason == "Client Portal step or page not found."
        assert drive.created == []

    @pytest.mark.asyncio
    async def test_rollback_runs_in_reverse_order(self, db_session, agency_credential, ghl, drive):
        ghl.funnels = []

        await run_workflow(db_session, ghl, drive, make_request())

        names = ghl.call_names()
        assert names.index("delete_user") < names.index("delete_location")
        assert ("delete_user", "user-new") in ghl.calls

    @pytest.mark.asyncio
    async def test_folder_failure(self, db_session, agency_credential, ghl, drive):
        drive.error = DriveServiceError("quota exceeded")

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert steps(stream)[-2:] == ["command_center_resolved", EVENT_FAILURE]
        assert stream.events[-1].reason == "Error during Google Drive folder creation."
        assert "update_custom_value" not in ghl.call_names()
        assert "delete_location" in ghl.call_names()

    @pytest.mark.asyncio
    async def test_custom_values_read_failure_removes_folder(self, db_session, agency_credential, ghl, drive):
        ghl.fail_on["get_custom_values"] = GHLAPIError("GHL Custom Values Failed: nope", 500)

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_FAILURE
        assert drive.deleted == ["folder-1"]

    @pytest.mark.asyncio
    async def test_rollback_can_be_disabled(self, db_session, agency_credential, ghl, drive, monkeypatch):
        monkeypatch.setenv("PROVISIONING_COMPENSATE", "false")
        ghl.funnels = []

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_FAILURE
        assert "delete_user" not in ghl.call_names()
        assert "delete_location" not in ghl.call_names()

    @pytest.mark.asyncio
    async def test_rollback_errors_do_not_mask_failure(self, db_session, agency_credential, ghl, drive):
        ghl.funnels = []
        ghl.fail_on["delete_user"] = GHLAPIError("GHL User Deletion Failed: gone", 404)

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].reason == "Client Portal step or page not found."
        assert "delete_location" in ghl.call_names()


# ---------------------------------------------------------------------------
# Custom value reconciliation
# ---------------------------------------------------------------------------

class TestCustomFieldSync:

    @pytest.mark.asyncio
    async def test_template_values_copied(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        assert ghl.updated["Agency Color 1"] == ("c1", "#112233")
        assert ghl.updated["Agency Name"] == ("c5", "Clingy")
        assert ghl.updated["Agency Support Email"] == ("c7", "support@clingy.test")
        assert "Unrelated Field" not in ghl.updated

    @pytest.mark.asyncio
    async def test_special_fields_use_derived_values(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        assert ghl.updated[COMMAND_CENTER_FIELD] == ("c8", "/page-portal")
        assert ghl.updated[CLIENT_ASSETS_FIELD] == ("c9", "https://drive.google.com/drive/folders/folder-1")

    @pytest.mark.asyncio
    async def test_template_read_before_new_account(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        reads = [call[1] for call in ghl.calls if call[0] == "get_custom_values"]
        assert reads[0] == TEMPLATE_LOCATION_ID
        assert reads[-1] == NEW_LOCATION_ID

    @pytest.mark.asyncio
    async def test_new_account_read_with_its_own_token(self, db_session, agency_credential, ghl, drive):
        await run_workflow(db_session, ghl, drive, make_request())

        read = next(call for call in ghl.calls if call[0] == "get_custom_values" and call[1] == NEW_LOCATION_ID)
        assert read[2] == f"token-{NEW_LOCATION_ID}"

    @pytest.mark.asyncio
    async def test_failed_field_does_not_stop_others(self, db_session, agency_credential, ghl, drive):
        ghl.failing_fields = {"Agency Color 1", COMMAND_CENTER_FIELD}

        stream = await run_workflow(db_session, ghl, drive, make_request())

        final = stream.events[-1]
        assert final.type == EVENT_SUCCESS
        assert "Agency Color 1" not in ghl.updated
        assert ghl.updated["Agency Color 2"] == ("c2", "#445566")
        assert CLIENT_ASSETS_FIELD in ghl.updated
        assert set(final.result["skipped_fields"]) == {"Agency Color 1", COMMAND_CENTER_FIELD}

    @pytest.mark.asyncio
    async def test_field_missing_on_template_is_skipped(self, db_session, agency_credential, ghl, drive):
        ghl.custom_values[TEMPLATE_LOCATION_ID] = [
            {"id": "t1", "name": "Agency Color 1", "value": "x"},
            {"id": "t2", "name": "Agency Color 2", "value": "y"},
        ]

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert ghl.updated["Agency Color 1"] == ("c1", "x")
        assert ghl.updated["Agency Color 2"] == ("c2", "y")
        assert "Agency Name" not in ghl.updated
        assert "Agency Name" in stream.events[-1].result["skipped_fields"]

    @pytest.mark.asyncio
    async def test_new_account_without_fields_still_succeeds(self, db_session, agency_credential, ghl, drive):
        ghl.custom_values[NEW_LOCATION_ID] = []

        stream = await run_workflow(db_session, ghl, drive, make_request())

        assert stream.events[-1].type == EVENT_SUCCESS
        assert ghl.updated == {}
        assert stream.events[-1].result["synced_fields"] == []


def test_index_custom_fields_matches_exact_names():
    fields = index_custom_fields([
        {"id": "1", "name": "Agency Name", "value": "A"},
        {"id": "2", "name": "agency name", "value": "B"},
        {"id": "3", "name": "Agency Name (old)", "value": "C"},
    ])

    assert list(fields) == ["Agency Name"]
    assert fields["Agency Name"].value == "A"
    assert "Agency Name" in FIELDS_TO_SYNC
