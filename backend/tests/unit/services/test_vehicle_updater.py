"""
Unit Tests for the Vehicle Record Updater
"""
import pytest
from datetime import date, datetime

from app.services.vehicle_updater import VehicleRecordUpdater


RC_DATA = {
    "number": "KA01AB1234",
    "ownerName": "RAVI KUMAR",
    "make": "TATA MOTORS",
    "model": "SIGNA 4825.TK",
    "year": 2019,
    "fuelType": "DIESEL",
    "registrationDate": "2019-03-15",
    "registrationAuthority": "RTO BANGALORE CENTRAL",
    "chassisNumber": "MAT123456789",
    "engineNumber": "ENG987654",
    "insuranceExpiry": "2026-01-01",
    "puccExpiry": "2025-06-30",
    "fitnessExpiry": "not a date",
    "financer": None,
    "isFinanced": False,
}


class TestApplyRC:
    """Test RC upserts"""

    @pytest.mark.asyncio
    async def test_creates_missing_vehicle(self, db_session, test_user):
        updater = VehicleRecordUpdater(db_session)

        vehicle = await updater.apply_rc(test_user.id, "KA01AB1234", RC_DATA)

        assert vehicle.id is not None
        assert vehicle.owner_name == "RAVI KUMAR"
        assert vehicle.year == 2019
        assert vehicle.registration_date == date(2019, 3, 15)
        assert vehicle.insurance_expiry == date(2026, 1, 1)
        assert vehicle.pollution_expiry == date(2025, 6, 30)
        assert vehicle.fitness_expiry is None
        assert vehicle.rc_verification_status == "verified"
        assert vehicle.rc_verified_at is not None
        assert vehicle.rc_data_complete is True

    @pytest.mark.asyncio
    async def test_blank_values_do_not_overwrite(self, db_session, test_vehicle):
        test_vehicle.chassis_number = "KNOWNCHASSIS"
        test_vehicle.owner_name = "KNOWN OWNER"
        await db_session.commit()
        updater = VehicleRecordUpdater(db_session)

        vehicle = await updater.apply_rc(
            test_vehicle.user_id, "KA01AB1234", {"ownerName": "", "chassisNumber": None, "make": "ASHOK LEYLAND"}
        )

        assert vehicle.id == test_vehicle.id
        assert vehicle.owner_name == "KNOWN OWNER"
        assert vehicle.chassis_number == "KNOWNCHASSIS"
        assert vehicle.make == "ASHOK LEYLAND"
        assert vehicle.rc_data_complete is False

    @pytest.mark.asyncio
    async def test_uses_given_timestamp(self, db_session, test_vehicle):
        at = datetime(2024, 5, 1, 8, 30)
        updater = VehicleRecordUpdater(db_session)

        vehicle = await updater.apply("rc", test_vehicle.user_id, "KA01AB1234", RC_DATA, at)

        assert vehicle.rc_verified_at == at


class TestApplyFastag:
    """Test FASTag updates"""

    @pytest.mark.asyncio
    async def test_updates_existing_vehicle(self, db_session, test_vehicle):
        updater = VehicleRecordUpdater(db_session)

        vehicle = await updater.apply_fastag(
            test_vehicle.user_id,
            "KA01AB1234",
            {"balance": 450, "linked": True, "tagId": "TAG1", "status": "ACTIVE", "bankName": "ICICI BANK"},
        )

        assert vehicle.fasttag_balance == 450
        assert vehicle.fasttag_linked is True
        assert vehicle.fasttag_tag_id == "TAG1"
        assert vehicle.fasttag_status == "ACTIVE"
        assert vehicle.fasttag_bank_name == "ICICI BANK"
        assert vehicle.fasttag_last_synced_at is not None

    @pytest.mark.asyncio
    async def test_missing_vehicle_is_not_created(self, db_session, test_user):
        updater = VehicleRecordUpdater(db_session)

        result = await updater.apply_fastag(test_user.id, "KA01AB1234", {"balance": 1})

        assert result is None
        assert await updater.get_vehicle(test_user.id, "KA01AB1234") is None


class TestApplyChallans:
    """Test challan count updates"""

    @pytest.mark.asyncio
    async def test_count_from_total(self, db_session, test_vehicle):
        updater = VehicleRecordUpdater(db_session)

        vehicle = await updater.apply("challans", test_vehicle.user_id, "KA01AB1234", {"challans": [{}], "totalChallans": 4})

        assert vehicle.challans_count == 4
        assert vehicle.challans_last_synced_at is not None

    @pytest.mark.asyncio
    async def test_count_from_list(self, db_session, test_vehicle):
        updater = VehicleRecordUpdater(db_session)

        vehicle = await updater.apply_challans(test_vehicle.user_id, "KA01AB1234", {"challans": [{}, {}]})

        assert vehicle.challans_count == 2


@pytest.mark.asyncio
async def test_remember_identity_numbers_fills_gaps_only(db_session, test_vehicle):
    test_vehicle.engine_number = "ENGKNOWN"
    await db_session.commit()
    updater = VehicleRecordUpdater(db_session)

    await updater.remember_identity_numbers(test_vehicle, "CHASSISNEW", "ENGNEW")

    assert test_vehicle.chassis_number == "CHASSISNEW"
    assert test_vehicle.engine_number == "ENGKNOWN"
