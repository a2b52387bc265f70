from sqlalchemy import Column, String, DateTime, Enum as SQLEnum, Text, ForeignKey, JSON, Index
from sqlalchemy.orm import declared_attr
import enum

from app.core.database import Base
from app.core.types import GUID, generate_uuid, utcnow


class VerificationStatus(str, enum.Enum):
    """Verification record lifecycle: pending -> completed | failed"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class VerificationRecordMixin:
    """
    Columns shared by every verification log table.

    Rows are append-only: created pending before the gateway call and moved
    to a terminal status exactly once.
    """

    @declared_attr
    def __table_args__(cls):
        name = cls.__tablename__
        return (
            # Cache lookups: latest record per (user, vehicle) with a given status
            Index(f'ix_{name}_lookup', 'user_id', 'vehicle_number', 'status', 'created_at'),
            Index(f'ix_{name}_request_id', 'request_id'),
        )

    id = Column(GUID, primary_key=True, default=generate_uuid)

    @declared_attr
    def user_id(cls):
        return Column(GUID, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    vehicle_number = Column(String(20), nullable=False)
    status = Column(SQLEnum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False)

    verification_data = Column(JSON, nullable=True)  # set only when completed
    error_message = Column(Text, nullable=True)  # set only when failed
    request_id = Column(String(100), nullable=True)  # upstream request id, used by the webhook

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (VerificationStatus.COMPLETED, VerificationStatus.FAILED)

    def __repr__(self):
        return f"<{type(self).__name__} {self.vehicle_number} {self.status}>"


class RCVerification(VerificationRecordMixin, Base):
    """Registration Certificate lookups"""
    __tablename__ = "rc_verifications"
    service = "rc"


class FastagVerification(VerificationRecordMixin, Base):
    """FASTag wallet lookups"""
    __tablename__ = "fastag_verifications"
    service = "fastag"


class ChallanVerification(VerificationRecordMixin, Base):
    """Traffic challan lookups"""
    __tablename__ = "challan_verifications"
    service = "challans"


RECORD_MODELS = {
    "rc": RCVerification,
    "fastag": FastagVerification,
    "challans": ChallanVerification,
}
