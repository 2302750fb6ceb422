"""
Full-state synchronization rules shared by every storage backend.

A user document is a plain dict. Writes are a sparse patch at the top level,
a key-wise upsert of month/year records one level down and a full replace of
each record.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError

RECORD_KINDS = ("expenses", "income", "notes")
CONFIG_FIELDS = (
    "systemUsers",
    "years",
    "categories",
    "suppliers",
    "paymentMethods",
    "maintenance",
    "maintenanceTypes",
    "maintenanceAreas",
)
SYNC_FIELDS = RECORD_KINDS + ("fleet",) + CONFIG_FIELDS

MIN_YEAR = 1900
MAX_YEAR = 2100

DEFAULT_YEARS = [2024, 2025, 2026]
DEFAULT_CATEGORIES = [
    "Alimentação",
    "Carro",
    "Transporte",
    "Manutenção",
    "Farmácia",
    "Outros",
    "Pets",
    "Hotel",
    "Escritório",
    "Fornecedor",
]
DEFAULT_SUPPLIERS = [
    "Amoedo",
    "Carrefour",
    "Detail Wash",
    "Droga Raia",
    "Hortfruti",
    "Kalunga",
    "Lave Bem",
    "Outros",
    "Pacheco",
    "PetChic",
    "Posto hum",
    "Prezunic",
    "RM água",
    "Venancio",
    "Zona Sul",
]
DEFAULT_PAYMENT_METHODS = ["Cartão de Crédito", "Reembolso", "Conta Corrente", "Outros"]


class RecordPeriod(BaseModel):
    model_config = ConfigDict(extra="ignore")
    month: int = Field(ge=1, le=12)
    year: int = Field(ge=MIN_YEAR, le=MAX_YEAR)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_timestamp(now: Optional[datetime] = None) -> str:
    moment = (now or utc_now()).astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _default_fields() -> dict[str, Any]:
    # Fresh copies on every call; callers mutate the result.
    return {
        "expenses": [],
        "income": [],
        "fleet": {"vehicles": []},
        "notes": [],
        "systemUsers": [],
        "years": list(DEFAULT_YEARS),
        "categories": list(DEFAULT_CATEGORIES),
        "suppliers": list(DEFAULT_SUPPLIERS),
        "paymentMethods": list(DEFAULT_PAYMENT_METHODS),
        "maintenance": [],
        "maintenanceTypes": [],
        "maintenanceAreas": [],
    }


def default_user_state(user_id: str) -> dict[str, Any]:
    return {"userId": user_id, **_default_fields(), "updatedAt": None}


def with_defaults(document: dict[str, Any]) -> dict[str, Any]:
    """Fill every sync field that was never set (or was cleared) with its default."""
    state = {**default_user_state(document.get("userId", "")), **document}
    defaults = _default_fields()
    for field in SYNC_FIELDS:
        if state.get(field) is None:
            state[field] = defaults[field]
    return state


def normalize_period(month: Any, year: Any, field_prefix: str = "") -> tuple[int, int]:
    try:
        period = RecordPeriod(month=month, year=year)
    except PydanticValidationError as exc:
        details = [
            {
                "field": field_prefix + ".".join(str(part) for part in err.get("loc", [])),
                "message": err.get("msg", "invalid value"),
            }
            for err in exc.errors()
        ]
        raise ValidationError("invalid month/year", details) from exc
    return period.month, period.year


def record_key(month: Any, year: Any) -> str:
    return f"{month}-{year}"


def find_record(records: list[dict[str, Any]], month: int, year: int) -> Optional[dict[str, Any]]:
    key = record_key(month, year)
    for record in records:
        if record_key(record.get("month"), record.get("year")) == key:
            return record
    return None


def empty_record(kind: str, user_id: str, month: int, year: int) -> dict[str, Any]:
    record: dict[str, Any] = {"userId": user_id, "month": month, "year": year}
    if kind == "notes":
        record["content"] = ""
    else:
        record["items"] = []
    record["updatedAt"] = None
    return record


def empty_fleet(user_id: str) -> dict[str, Any]:
    return {"userId": user_id, "vehicles": [], "updatedAt": None}


def upsert_records(existing: list[dict[str, Any]], incoming: list[dict[str, Any]], kind: str) -> list[dict[str, Any]]:
    """
    Overwrite records by month/year key, append unseen keys.

    Records missing from ``incoming`` are kept and first-write order is
    preserved. A key repeated inside ``incoming`` resolves to its last entry.
    """
    merged = list(existing)
    positions = {record_key(record.get("month"), record.get("year")): index for index, record in enumerate(merged)}
    for index, item in enumerate(incoming):
        month, year = normalize_period(item.get("month"), item.get("year"), f"{kind}.{index}.")
        record = {**item, "month": month, "year": year}
        key = record_key(month, year)
        if key in positions:
            merged[positions[key]] = record
        else:
            positions[key] = len(merged)
            merged.append(record)
    return merged


def replace_fleet(fleet: Any) -> Any:
    # Non-object fleets are opaque and stored as sent.
    if not isinstance(fleet, dict):
        return fleet
    replaced = dict(fleet)
    if replaced.get("vehicles") is None:
        replaced["vehicles"] = []
    return replaced


def apply_sync_patch(document: dict[str, Any], patch: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    """
    Return a new document with ``patch`` applied.

    Absent top-level fields are untouched. ``null`` on a replace field clears it
    back to its default; ``null`` on a record collection is ignored so a sync
    never shrinks the stored records.
    """
    updated = dict(document)
    for kind in RECORD_KINDS:
        incoming = patch.get(kind)
        if incoming is None:
            continue
        updated[kind] = upsert_records(document.get(kind) or [], incoming, kind)
    if "fleet" in patch:
        if patch["fleet"] is None:
            updated.pop("fleet", None)
        else:
            updated["fleet"] = replace_fleet(patch["fleet"])
    for field in CONFIG_FIELDS:
        if field not in patch:
            continue
        if patch[field] is None:
            updated.pop(field, None)
        else:
            updated[field] = patch[field]
    updated["updatedAt"] = utc_timestamp(now)
    return updated


def replace_record(document: dict[str, Any], kind: str, record: dict[str, Any]) -> dict[str, Any]:
    updated = dict(document)
    updated[kind] = upsert_records(document.get(kind) or [], [record], kind)
    updated["updatedAt"] = record.get("updatedAt") or utc_timestamp()
    return updated


def render_sync_state(document: dict[str, Any], now: Optional[datetime] = None) -> dict[str, Any]:
    state = with_defaults(document)
    rendered = {field: state[field] for field in SYNC_FIELDS}
    rendered["timestamp"] = int((now or utc_now()).timestamp() * 1000)
    return rendered
