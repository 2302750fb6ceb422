from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from .services.sync import MAX_YEAR, MIN_YEAR


class ApiErrorDetail(BaseModel):
    field: str
    message: str


class ApiErrorPayload(BaseModel):
    code: str
    message: str
    details: list[ApiErrorDetail] = Field(default_factory=list)


class ApiErrorResponse(BaseModel):
    success: bool = False
    error: ApiErrorPayload


class HealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: str
    message: str
    timestamp: str
    storage: str
    media: str


class PeriodRecordWrite(BaseModel):
    userId: str = Field(min_length=1)
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=MIN_YEAR, le=MAX_YEAR)


class ItemsRecordWrite(PeriodRecordWrite):
    items: JsonValue = Field(default_factory=list)


class NoteWrite(PeriodRecordWrite):
    content: JsonValue = ""


class FleetWrite(BaseModel):
    userId: str = Field(min_length=1)
    vehicles: JsonValue = Field(default_factory=list)


class SyncPayload(BaseModel):
    """Sparse patch: only the fields actually sent are applied."""

    userId: str = Field(min_length=1)
    expenses: Optional[list[dict[str, JsonValue]]] = None
    income: Optional[list[dict[str, JsonValue]]] = None
    fleet: Optional[JsonValue] = None
    notes: Optional[list[dict[str, JsonValue]]] = None
    systemUsers: Optional[JsonValue] = None
    years: Optional[JsonValue] = None
    categories: Optional[JsonValue] = None
    suppliers: Optional[JsonValue] = None
    paymentMethods: Optional[JsonValue] = None
    maintenance: Optional[JsonValue] = None
    maintenanceTypes: Optional[JsonValue] = None
    maintenanceAreas: Optional[JsonValue] = None


class RecordWriteResponse(BaseModel):
    success: bool = True
    data: dict[str, Any]


class SyncWriteResponse(BaseModel):
    success: bool = True
    updatedAt: Optional[str] = None


class SyncDeleteResponse(BaseModel):
    success: bool = True
    message: str


class UploadRequest(BaseModel):
    file: Optional[str] = None
    filename: Optional[str] = None
    userId: Optional[str] = None


class UploadResponse(BaseModel):
    success: bool = True
    url: str
    publicId: str


class UploadDeleteRequest(BaseModel):
    publicId: Optional[str] = None


class SuccessResponse(BaseModel):
    success: bool = True
