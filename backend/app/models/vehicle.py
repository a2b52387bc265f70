from sqlalchemy import Column, String, Boolean, DateTime, Date, Integer, Float, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.core.database import Base
from app.core.types import GUID, generate_uuid, utcnow


class Vehicle(Base):
    """
    Fleet vehicle.

    Verification-derived columns (RC details, FASTag wallet, challan counts)
    are written only by VehicleRecordUpdater.
    """
    __tablename__ = "vehicles"

    __table_args__ = (
        UniqueConstraint('user_id', 'number', name='uq_vehicles_user_number'),
    )

    id = Column(GUID, primary_key=True, default=generate_uuid)
    user_id = Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    number = Column(String(20), nullable=False, index=True)  # normalized registration number

    # Identity numbers (required by the challan lookup, backfilled from RC)
    chassis_number = Column(String(50), nullable=True)
    engine_number = Column(String(50), nullable=True)

    # RC details
    make = Column(String(100), nullable=True)
    model = Column(String(255), nullable=True)
    year = Column(Integer, nullable=True)
    fuel_type = Column(String(50), nullable=True)
    owner_name = Column(String(255), nullable=True)
    registration_date = Column(Date, nullable=True)
    registration_authority = Column(String(255), nullable=True)
    permanent_address = Column(Text, nullable=True)
    financer = Column(String(255), nullable=True)
    is_financed = Column(Boolean, default=False)
    insurance_expiry = Column(Date, nullable=True)
    pollution_expiry = Column(Date, nullable=True)
    fitness_expiry = Column(Date, nullable=True)
    rc_verified_at = Column(DateTime, nullable=True)
    rc_verification_status = Column(String(20), nullable=True)  # verified / failed
    rc_data_complete = Column(Boolean, default=False)

    # FASTag
    fasttag_balance = Column(Float, nullable=True)
    fasttag_linked = Column(Boolean, default=False)
    fasttag_last_synced_at = Column(DateTime, nullable=True)
    fasttag_tag_id = Column(String(100), nullable=True)
    fasttag_status = Column(String(50), nullable=True)
    fasttag_bank_name = Column(String(255), nullable=True)

    # Challans
    challans_count = Column(Integer, nullable=True)
    challans_last_synced_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="vehicles")

    def __repr__(self):
        return f"<Vehicle {self.number}>"
