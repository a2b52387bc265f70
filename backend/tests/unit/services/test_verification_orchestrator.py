"""
Unit Tests for the Verification Orchestrators

Fresh cache, upstream fetch, stale fallback, challan identity backfill,
webhook completion and single-flight collapsing, end to end against a
scripted gateway and a real (SQLite) database.
"""
import asyncio
import pytest
import httpx
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.exceptions import (
    MissingChallanFieldsError,
    ValidationError,
    VerificationRecordNotFoundError,
    VerificationStateError,
)
from app.models.vehicle import Vehicle
from app.models.verification import VerificationStatus
from app.services.response_classifier import extract
from app.services.single_flight import SingleFlight
from app.services.upstream_gateway import UpstreamGatewayClient
from app.services.verification_cache import VerificationCacheStore
from app.services.verification_orchestrator import (
    VerificationRequest,
    VerificationResult,
    VerificationService,
)

VEHICLE = "KA01AB1234"

FASTAG_OK = {
    "status": "success",
    "request_id": "req-fastag-1",
    "response": {
        "balance": 450,
        "linked": True,
        "tag_status": "ACTIVE",
        "tag_id": "34161FA82000001",
        "bank_name": "ICICI BANK",
    },
}

RC_OK = {
    "statusCode": 200,
    "body": {
        "status": "success",
        "response": {
            "license_plate": VEHICLE,
            "owner_name": "RAVI KUMAR",
            "brand_name": "TATA MOTORS",
            "brand_model": "SIGNA 4825.TK",
            "chassis_number": "MAT123456789",
            "engine_number": "ENG987654",
            "registration_date": "15/03/2019",
        },
    },
}

RC_WITHOUT_IDENTITY = {"status": "success", "response": {"owner_name": "RAVI KUMAR", "brand_name": "TATA MOTORS"}}

CHALLANS_OK = {
    "status": "success",
    "response": {
        "challans": [
            {"challan_no": "KA0001", "amount": 500, "challan_status": "Pending"},
            {"challan_no": "KA0002", "amount": 1000, "challan_status": "Paid"},
        ]
    },
}


def make_service(db_session, gateway) -> VerificationService:
    return VerificationService(db_session, gateway, flights=SingleFlight())


def request_for(user, **kwargs) -> VerificationRequest:
    return VerificationRequest(user_id=user.id, vehicle_number=VEHICLE, **kwargs)


class TestVerificationResult:
    """Test the response shape"""

    def test_optional_keys_omitted(self):
        response = VerificationResult(success=False, data=None, cached=False).to_response()
        assert response == {"success": False, "data": None, "cached": False}

    def test_stale_shape(self):
        response = VerificationResult(
            success=False,
            data={"balance": 300},
            cached=True,
            error="FASTag service temporarily unavailable",
            details="timeout",
            data_age="4 hours ago",
            verified_at=datetime(2024, 1, 1, 10, 0),
        ).to_response()

        assert response["dataAge"] == "4 hours ago"
        assert response["verifiedAt"] == "2024-01-01T10:00:00Z"
        assert response["error"] == "FASTag service temporarily unavailable"


class TestFastagVerification:
    """Test the FASTag pipeline"""

    @pytest.mark.asyncio
    async def test_fresh_fetch_updates_vehicle(self, db_session, test_vehicle, test_user, gateway, gateway_script):
        gateway_script.queue("fastag", FASTAG_OK)
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is True
        assert result.cached is False
        assert result.data["balance"] == 450
        assert result.data["linked"] is True
        response = result.to_response()
        assert "dataAge" not in response
        assert "error" not in response
        assert response["verifiedAt"].endswith("Z")

        await db_session.refresh(test_vehicle)
        assert test_vehicle.fasttag_balance == 450
        assert test_vehicle.fasttag_linked is True
        assert test_vehicle.fasttag_bank_name == "ICICI BANK"

    @pytest.mark.asyncio
    async def test_at_most_one_call_within_window(self, db_session, test_vehicle, test_user, gateway, gateway_script):
        gateway_script.queue("fastag", FASTAG_OK)
        service = make_service(db_session, gateway)

        first = await service.verify("fastag", request_for(test_user))
        second = await service.verify("fastag", request_for(test_user))

        assert len(gateway_script.calls_for("fastag")) == 1
        assert second.success is True
        assert second.cached is True
        assert second.data == first.data
        assert "dataAge" not in second.to_response()

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_fresh_cache(
        self, db_session, test_vehicle, test_user, gateway, gateway_script, make_record
    ):
        await make_record("fastag", test_user.id, data={"balance": 100}, age=timedelta(minutes=5))
        gateway_script.queue("fastag", FASTAG_OK)
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user, force_refresh=True))

        assert len(gateway_script.calls_for("fastag")) == 1
        assert result.cached is False
        assert result.data["balance"] == 450

    @pytest.mark.asyncio
    async def test_expired_cache_triggers_fetch(
        self, db_session, test_vehicle, test_user, gateway, gateway_script, make_record
    ):
        await make_record("fastag", test_user.id, data={"balance": 100}, age=timedelta(minutes=45))
        gateway_script.queue("fastag", FASTAG_OK)
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.cached is False
        assert result.data["balance"] == 450

    @pytest.mark.asyncio
    async def test_stale_fallback_after_timeout(
        self, db_session, test_vehicle, test_user, gateway, gateway_script, make_record, sleeps
    ):
        stale = await make_record(
            "fastag", test_user.id,
            data={"balance": 300, "linked": True, "status": "ACTIVE"},
            age=timedelta(hours=4, minutes=5),
        )
        gateway_script.queue("fastag", httpx.ConnectTimeout("timed out"))
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert len(gateway_script.calls_for("fastag")) == 2
        assert sleeps == [1.0]
        assert result.success is False
        assert result.cached is True
        assert result.data["balance"] == 300
        assert result.data_age == "4 hours ago"
        assert result.error == "FASTag service temporarily unavailable"
        assert result.to_response()["dataAge"] == "4 hours ago"

        await db_session.refresh(test_vehicle)
        assert test_vehicle.fasttag_balance == 300
        assert test_vehicle.fasttag_last_synced_at == stale.created_at

        records = await VerificationCacheStore(db_session).list_recent(test_user.id, VEHICLE, "fastag")
        assert records[0].status == VerificationStatus.FAILED
        assert "unreachable" in records[0].error_message

    @pytest.mark.asyncio
    async def test_stale_fallback_beyond_stale_window(
        self, db_session, test_vehicle, test_user, gateway, gateway_script, make_record
    ):
        await make_record("fastag", test_user.id, data={"balance": 75}, age=timedelta(days=2, minutes=5))
        gateway_script.queue("fastag", httpx.ConnectError("connection refused"))
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is False
        assert result.data["balance"] == 75
        assert result.data_age == "2 days ago"

    @pytest.mark.asyncio
    async def test_failure_without_cache(self, db_session, test_user, gateway, gateway_script):
        gateway_script.queue("fastag", httpx.ConnectError("connection refused"))
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.to_response()["success"] is False
        assert result.to_response()["data"] is None
        assert result.cached is False
        assert result.data_age is None
        assert result.error == "FASTag service temporarily unavailable"

    @pytest.mark.asyncio
    async def test_upstream_rejection(self, db_session, test_user, gateway, gateway_script):
        gateway_script.queue("fastag", {"status": "failed", "error": "Vehicle not found"})
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is False
        assert result.data is None
        assert result.error == "FASTag verification failed"
        assert result.details == "Vehicle not found"

        records = await VerificationCacheStore(db_session).list_recent(test_user.id, VEHICLE, "fastag")
        assert records[0].status == VerificationStatus.FAILED
        assert records[0].error_message == "Vehicle not found"

    @pytest.mark.parametrize("body", [
        {"vehicle_number": VEHICLE, "message": "No FASTag found for this vehicle"},
        {"message": "Invalid vehicle number", "data": {"vehicle_number": VEHICLE}},
    ])
    @pytest.mark.asyncio
    async def test_error_reply_keeps_last_known_balance(
        self, db_session, test_vehicle, test_user, gateway, gateway_script, make_record, body
    ):
        test_vehicle.fasttag_balance = 300
        test_vehicle.fasttag_linked = True
        await db_session.commit()
        await make_record("fastag", test_user.id, data={"balance": 300, "linked": True}, age=timedelta(hours=4))
        gateway_script.queue("fastag", body)
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is False
        assert result.cached is True
        assert result.data["balance"] == 300
        assert result.error == "FASTag verification failed"
        assert result.details == body["message"]

        await db_session.refresh(test_vehicle)
        assert test_vehicle.fasttag_balance == 300
        assert test_vehicle.fasttag_linked is True

        records = await VerificationCacheStore(db_session).list_recent(test_user.id, VEHICLE, "fastag")
        assert records[0].status == VerificationStatus.FAILED
        assert [r.status for r in records].count(VerificationStatus.COMPLETED) == 1

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_degrades_to_cache(self, db_session, test_user, make_record):
        await make_record("fastag", test_user.id, data={"balance": 10}, age=timedelta(hours=1, minutes=5))
        service = make_service(db_session, UpstreamGatewayClient(base_url=""))

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is False
        assert result.cached is True
        assert result.data["balance"] == 10
        assert result.details == "Vehicle data gateway is not configured"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, db_session, test_user):
        class ExplodingGateway(UpstreamGatewayClient):
            async def call(self, service, payload, max_attempts=None):
                raise RuntimeError("boom")

        service = make_service(db_session, ExplodingGateway(base_url="https://gateway.test/"))

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is False
        assert result.data is None
        assert result.error == "FASTag verification failed"
        assert result.details == "boom"


class TestRCVerification:
    """Test the RC pipeline"""

    @pytest.mark.asyncio
    async def test_fetch_creates_vehicle(self, db_session, test_user, gateway, gateway_script):
        gateway_script.queue("rc", RC_OK)
        service = make_service(db_session, gateway)

        result = await service.verify("rc", request_for(test_user))

        assert result.success is True
        assert result.data["ownerName"] == "RAVI KUMAR"
        assert result.data["registrationDate"] == "2019-03-15"

        vehicle = await service.updater.get_vehicle(test_user.id, VEHICLE)
        assert vehicle is not None
        assert vehicle.chassis_number == "MAT123456789"
        assert vehicle.rc_data_complete is True

    @pytest.mark.asyncio
    async def test_old_record_is_still_fresh(self, db_session, test_user, gateway, gateway_script, make_record):
        await make_record("rc", test_user.id, data={"ownerName": "OLD OWNER"}, age=timedelta(days=90))
        service = make_service(db_session, gateway)

        result = await service.verify("rc", request_for(test_user))

        assert result.cached is True
        assert result.data["ownerName"] == "OLD OWNER"
        assert gateway_script.requests == []

    @pytest.mark.asyncio
    async def test_served_from_vehicle_snapshot(self, db_session, test_user, gateway, gateway_script):
        vehicle = Vehicle(
            user_id=test_user.id,
            number=VEHICLE,
            owner_name="LEGACY OWNER",
            chassis_number="CH1",
            engine_number="EN1",
            rc_verified_at=datetime(2023, 6, 1),
        )
        db_session.add(vehicle)
        await db_session.commit()
        service = make_service(db_session, gateway)

        result = await service.verify("rc", request_for(test_user))

        assert result.cached is True
        assert result.data["ownerName"] == "LEGACY OWNER"
        assert result.data["chassisNumber"] == "CH1"
        assert result.to_response()["verifiedAt"] == "2023-06-01T00:00:00Z"
        assert gateway_script.requests == []


class TestChallanVerification:
    """Test chassis / engine resolution and the challan pipeline"""

    @pytest.mark.asyncio
    async def test_missing_identity_after_rc(self, db_session, test_user, gateway, gateway_script):
        gateway_script.queue("rc", RC_WITHOUT_IDENTITY)
        service = make_service(db_session, gateway)

        with pytest.raises(MissingChallanFieldsError) as exc_info:
            await service.verify("challans", request_for(test_user))

        assert exc_info.value.status_code == 422
        assert set(exc_info.value.details["missing_fields"]) == {"chassis_number", "engine_number"}
        assert len(gateway_script.calls_for("rc")) == 1
        assert gateway_script.calls_for("challans") == []
        assert await service.cache.list_recent(test_user.id, VEHICLE, "challans") == []

    @pytest.mark.asyncio
    async def test_backfills_from_rc(self, db_session, test_user, gateway, gateway_script):
        gateway_script.queue("rc", RC_OK)
        gateway_script.queue("challans", CHALLANS_OK)
        service = make_service(db_session, gateway)

        result = await service.verify("challans", request_for(test_user))

        assert result.success is True
        assert result.data["totalChallans"] == 2
        assert result.data["pendingCount"] == 1
        assert result.data["pendingAmount"] == 500
        [payload] = gateway_script.calls_for("challans")
        assert payload["chassis"] == "MAT123456789"
        assert payload["engine_no"] == "ENG987654"

        vehicle = await service.updater.get_vehicle(test_user.id, VEHICLE)
        assert vehicle.challans_count == 2

    @pytest.mark.asyncio
    async def test_uses_vehicle_identity(self, db_session, test_vehicle, test_user, gateway, gateway_script):
        test_vehicle.chassis_number = "CHASSIS1"
        test_vehicle.engine_number = "ENGINE1"
        await db_session.commit()
        gateway_script.queue("challans", CHALLANS_OK)
        service = make_service(db_session, gateway)

        await service.verify("challans", request_for(test_user))

        assert gateway_script.calls_for("rc") == []
        assert gateway_script.calls_for("challans")[0]["chassis"] == "CHASSIS1"

    @pytest.mark.asyncio
    async def test_request_identity_is_remembered(self, db_session, test_vehicle, test_user, gateway, gateway_script):
        gateway_script.queue("challans", CHALLANS_OK)
        service = make_service(db_session, gateway)

        await service.verify("challans", request_for(test_user, chassis="REQCHASSIS", engine_no="REQENGINE"))

        assert gateway_script.calls_for("rc") == []
        await db_session.refresh(test_vehicle)
        assert test_vehicle.chassis_number == "REQCHASSIS"
        assert test_vehicle.engine_number == "REQENGINE"

    @pytest.mark.asyncio
    async def test_fresh_window_and_fallback(
        self, db_session, test_vehicle, test_user, gateway, gateway_script, make_record
    ):
        test_vehicle.chassis_number = "CHASSIS1"
        test_vehicle.engine_number = "ENGINE1"
        await db_session.commit()
        await make_record("challans", test_user.id, data={"challans": [], "totalChallans": 0}, age=timedelta(hours=2, minutes=5))
        gateway_script.queue("challans", {"success": False, "message": "Provider down"})
        service = make_service(db_session, gateway)

        result = await service.verify("challans", request_for(test_user))

        assert len(gateway_script.calls_for("challans")) == 1
        assert result.success is False
        assert result.cached is True
        assert result.data_age == "2 hours ago"
        assert result.details == "Provider down"
        assert result.error == "Challans verification failed"


class TestWebhookCompletion:
    """Test asynchronous completion of processing lookups"""

    @pytest.mark.asyncio
    async def test_processing_then_completed(self, db_session, test_vehicle, test_user, gateway, gateway_script):
        gateway_script.queue("fastag", {"status": "processing", "request_id": "req-async"})
        service = make_service(db_session, gateway)

        result = await service.verify("fastag", request_for(test_user))

        assert result.success is False
        assert result.data is None
        assert result.error == "FASTag verification in progress"
        _, pending = await service.cache.find_by_request_id("req-async")
        assert pending.status == VerificationStatus.PENDING

        ack = await service.handle_webhook(
            "req-async", "validation_completed", {"response": {"balance": 500, "tag_status": "ACTIVE"}}
        )

        assert ack == {"request_id": "req-async", "service": "fastag", "status": "completed"}
        cached = await service.verify("fastag", request_for(test_user))
        assert cached.cached is True
        assert cached.data["balance"] == 500
        await db_session.refresh(test_vehicle)
        assert test_vehicle.fasttag_balance == 500

    @pytest.mark.asyncio
    async def test_failed_event(self, db_session, test_user, make_record):
        await make_record("rc", test_user.id, status=VerificationStatus.PENDING, request_id="req-rc")
        service = make_service(db_session, UpstreamGatewayClient(base_url=""))

        ack = await service.handle_webhook("req-rc", "validation_failed", error_message="Invalid RC")

        assert ack["status"] == "failed"
        _, record = await service.cache.find_by_request_id("req-rc")
        assert record.error_message == "Invalid RC"

    @pytest.mark.asyncio
    async def test_processing_event_is_acknowledged(self, db_session, test_user, make_record):
        await make_record("challans", test_user.id, status=VerificationStatus.PENDING, request_id="req-ch")
        service = make_service(db_session, UpstreamGatewayClient(base_url=""))

        ack = await service.handle_webhook("req-ch", "validation_processing")

        assert ack["status"] == "pending"

    @pytest.mark.asyncio
    async def test_second_delivery_is_rejected(self, db_session, test_user, make_record):
        await make_record("rc", test_user.id, status=VerificationStatus.PENDING, request_id="req-twice")
        service = make_service(db_session, UpstreamGatewayClient(base_url=""))
        await service.handle_webhook("req-twice", "validation_completed", {"owner_name": "A"})

        with pytest.raises(VerificationStateError):
            await service.handle_webhook("req-twice", "validation_completed", {"owner_name": "B"})

    @pytest.mark.asyncio
    async def test_unknown_request_id(self, db_session):
        service = make_service(db_session, UpstreamGatewayClient(base_url=""))

        with pytest.raises(VerificationRecordNotFoundError):
            await service.handle_webhook("nope", "validation_completed", {})

    @pytest.mark.asyncio
    async def test_unknown_event(self, db_session):
        service = make_service(db_session, UpstreamGatewayClient(base_url=""))

        with pytest.raises(ValidationError):
            await service.handle_webhook("req", "something_else")


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_call(db_session, test_vehicle, test_user, gateway, gateway_script):
    gateway_script.queue("fastag", FASTAG_OK)
    service = make_service(db_session, gateway)

    first, second = await asyncio.gather(
        service.verify("fastag", request_for(test_user)),
        service.verify("fastag", request_for(test_user)),
    )

    assert len(gateway_script.calls_for("fastag")) == 1
    assert first is second


@pytest.mark.asyncio
async def test_forced_request_does_not_join_cached_flight(
    db_session, test_vehicle, test_user, gateway, gateway_script, make_record
):
    await make_record("fastag", test_user.id, data={"balance": 300}, age=timedelta(minutes=5))
    gateway_script.queue("fastag", FASTAG_OK)
    flights = SingleFlight()
    sessions = async_sessionmaker(bind=db_session.bind, expire_on_commit=False)

    async with sessions() as plain_session, sessions() as forced_session:
        plain, forced = await asyncio.gather(
            VerificationService(plain_session, gateway, flights=flights).verify("fastag", request_for(test_user)),
            VerificationService(forced_session, gateway, flights=flights).verify(
                "fastag", request_for(test_user, force_refresh=True)
            ),
        )

    assert len(gateway_script.calls_for("fastag")) == 1
    assert plain.cached is True
    assert plain.data["balance"] == 300
    assert forced.cached is False
    assert forced.data["balance"] == 450


@pytest.mark.asyncio
async def test_history(db_session, test_vehicle, test_user, gateway, gateway_script):
    gateway_script.queue("fastag", FASTAG_OK)
    service = make_service(db_session, gateway)
    await service.verify("fastag", request_for(test_user))

    history = await service.history(test_user.id, "fastag", VEHICLE)

    assert len(history) == 1
    assert history[0]["status"] == "completed"
    assert history[0]["data"]["balance"] == 450
    assert history[0]["createdAt"].endswith("Z")


CHALLANS_DETAILED = {
    "statusCode": 200,
    "body": {
        "status": "success",
        "response": {
            "total_challans": 2,
            "challan_list": [
                {
                    "challan_number": "KA0003",
                    "challan_date": "05-01-2024",
                    "fine_amount": "1500.50",
                    "challan_status": "Unpaid",
                    "offences": [{"offence_name": "Overspeeding"}, {"offence_name": "No helmet"}],
                },
                {"challan_no": "KA0004", "date": "12/11/2023", "amount": 200, "status": "Paid"},
            ],
        },
    },
}


@pytest.mark.parametrize("service,body", [
    ("rc", RC_OK),
    ("fastag", FASTAG_OK),
    ("challans", CHALLANS_DETAILED),
])
@pytest.mark.asyncio
async def test_stored_data_matches_extraction(db_session, test_vehicle, test_user, gateway, gateway_script, service, body):
    gateway_script.queue(service, body)
    service_api = make_service(db_session, gateway)

    result = await service_api.verify(service, request_for(test_user, chassis="CH1", engine_no="EN1"))

    expected = extract(service, body, VEHICLE)
    record = await service_api.cache.find_latest_completed(test_user.id, VEHICLE, service)
    assert result.success is True
    assert record.verification_data == expected
    assert result.data == expected
