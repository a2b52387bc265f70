from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from typing import Optional, Any, Dict, List


class VehicleInfoRequest(BaseModel):
    """
    Inbound lookup request. Service and vehicle may arrive under several
    names; presence is checked by the endpoint so a missing identifier is a 400.
    """
    model_config = ConfigDict(populate_by_name=True)

    service: Optional[str] = Field(None, validation_alias=AliasChoices("service", "type"))
    vehicle_number: Optional[str] = Field(
        None, validation_alias=AliasChoices("vehicleNumber", "vehicleId", "vehicle_number", "vehicle_id")
    )
    chassis: Optional[str] = Field(
        None, validation_alias=AliasChoices("chassis", "chassis_no", "chassisNumber", "chassis_number")
    )
    engine_no: Optional[str] = Field(
        None, validation_alias=AliasChoices("engine_no", "engineNo", "engineNumber", "engine", "engine_number")
    )
    force_refresh: bool = Field(False, validation_alias=AliasChoices("forceRefresh", "force_refresh"))

    @field_validator("service", "vehicle_number", "chassis", "engine_no", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ServiceVerificationRequest(BaseModel):
    """Body of the per-service routes (service comes from the path)"""
    model_config = ConfigDict(populate_by_name=True)

    vehicle_number: Optional[str] = Field(
        None, validation_alias=AliasChoices("vehicleNumber", "vehicleId", "vehicle_number", "vehicle_id")
    )
    chassis: Optional[str] = Field(
        None, validation_alias=AliasChoices("chassis", "chassis_no", "chassisNumber", "chassis_number")
    )
    engine_no: Optional[str] = Field(
        None, validation_alias=AliasChoices("engine_no", "engineNo", "engineNumber", "engine", "engine_number")
    )
    force_refresh: bool = Field(False, validation_alias=AliasChoices("forceRefresh", "force_refresh"))

    @field_validator("vehicle_number", "chassis", "engine_no", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class WebhookPayload(BaseModel):
    """Asynchronous completion delivered by the gateway"""
    request_id: str = Field(..., min_length=1, validation_alias=AliasChoices("request_id", "requestId"))
    event_type: str = Field(..., validation_alias=AliasChoices("event_type", "eventType", "event"))
    data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = Field(None, validation_alias=AliasChoices("error_message", "errorMessage"))


class WebhookAck(BaseModel):
    success: bool = True
    request_id: str
    service: str
    status: str


class VerificationHistoryItem(BaseModel):
    id: str
    status: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    requestId: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


class VerificationHistoryResponse(BaseModel):
    service: str
    vehicle_number: str
    items: List[VerificationHistoryItem]
