from datetime import datetime, timezone

import pytest

from casadw.errors import ValidationError
from casadw.services.sync import (
    apply_sync_patch,
    default_user_state,
    normalize_period,
    render_sync_state,
    upsert_records,
    with_defaults,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_default_state_lists_are_independent_copies() -> None:
    first = default_user_state("a")
    second = default_user_state("b")
    first["categories"].append("Extra")
    first["fleet"]["vehicles"].append("car")
    assert "Extra" not in second["categories"]
    assert second["fleet"] == {"vehicles": []}


def test_with_defaults_fills_missing_and_null_fields() -> None:
    state = with_defaults({"userId": "u", "years": None, "expenses": [{"month": 1, "year": 2025}]})
    assert state["years"] == [2024, 2025, 2026]
    assert state["expenses"] == [{"month": 1, "year": 2025}]
    assert state["fleet"] == {"vehicles": []}


def test_upsert_keeps_first_write_order_and_last_duplicate_wins() -> None:
    existing = [{"month": 2, "year": 2025, "items": ["old"]}]
    incoming = [
        {"month": 1, "year": 2025, "items": ["jan"]},
        {"month": 2, "year": 2025, "items": ["first"]},
        {"month": "2", "year": "2025", "items": ["second"]},
    ]
    merged = upsert_records(existing, incoming, "expenses")
    assert merged == [
        {"month": 2, "year": 2025, "items": ["second"]},
        {"month": 1, "year": 2025, "items": ["jan"]},
    ]
    assert existing == [{"month": 2, "year": 2025, "items": ["old"]}]


def test_patch_is_sparse_at_top_level() -> None:
    document = {**default_user_state("u"), "expenses": [{"month": 1, "year": 2025, "items": [1]}], "years": [2020]}
    patched = apply_sync_patch(document, {"suppliers": ["Only"]}, now=NOW)
    assert patched["expenses"] == document["expenses"]
    assert patched["years"] == [2020]
    assert patched["suppliers"] == ["Only"]
    assert patched["updatedAt"] == "2025-03-01T12:00:00.000Z"


def test_null_record_collection_is_ignored() -> None:
    document = {**default_user_state("u"), "notes": [{"month": 1, "year": 2025, "content": "x"}]}
    patched = apply_sync_patch(document, {"notes": None}, now=NOW)
    assert patched["notes"] == document["notes"]


@pytest.mark.parametrize(
    "month, year",
    [(0, 2025), (13, 2025), ("june", 2025), (None, 2025), (1, None), (1, 1800)],
)
def test_normalize_period_rejects_malformed_values(month, year) -> None:
    with pytest.raises(ValidationError):
        normalize_period(month, year)


def test_normalize_period_coerces_numeric_strings() -> None:
    assert normalize_period("7", "2025") == (7, 2025)


def test_render_sync_state_has_only_sync_fields() -> None:
    rendered = render_sync_state(default_user_state("u"), now=NOW)
    assert "userId" not in rendered
    assert rendered["timestamp"] == int(NOW.timestamp() * 1000)
    assert rendered["fleet"] == {"vehicles": []}
