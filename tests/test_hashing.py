import hashlib
import re
from datetime import datetime, timedelta, timezone

import pytest

from todo_ledger.hashing import (
    ZERO_DIGEST,
    bytes32_to_hex,
    canonical_timestamp,
    compute_hash,
    hex_to_bytes32,
    is_zero_digest,
    verify_hash,
)

from conftest import make_todo


def sha(text: str) -> str:
    return "0x" + hashlib.sha256(text.encode("utf-8")).hexdigest()


class TestCanonicalTimestamp:
    def test_millisecond_precision_with_z_suffix(self):
        value = datetime(2025, 1, 15, 9, 30, 12, 345678, tzinfo=timezone.utc)
        assert canonical_timestamp(value) == "2025-01-15T09:30:12.345Z"

    def test_naive_is_treated_as_utc(self):
        assert canonical_timestamp(datetime(2025, 1, 15, 9, 30)) == "2025-01-15T09:30:00.000Z"

    def test_offset_is_converted_to_utc(self):
        cet = timezone(timedelta(hours=1))
        assert canonical_timestamp(datetime(2025, 1, 15, 10, 30, tzinfo=cet)) == "2025-01-15T09:30:00.000Z"

    def test_none_renders_empty(self):
        assert canonical_timestamp(None) == ""


class TestComputeHash:
    def test_serialization_order_and_digest(self):
        todo = make_todo()
        expected = sha(
            "alice|Write report|Quarterly numbers|false|high|2025-03-01T17:00:00.000Z|2025-01-15T09:30:12.345Z"
        )
        assert compute_hash(todo) == expected

    def test_shape(self):
        assert re.fullmatch(r"0x[0-9a-f]{64}", compute_hash(make_todo()))

    def test_deterministic(self):
        assert compute_hash(make_todo()) == compute_hash(make_todo())

    def test_absent_optional_fields(self):
        todo = make_todo(description=None, due_date=None, priority=None, completed=True)
        assert compute_hash(todo) == sha("alice|Write report||true|medium||2025-01-15T09:30:12.345Z")

    def test_empty_and_missing_description_hash_alike(self):
        assert compute_hash(make_todo(description=None)) == compute_hash(make_todo(description=""))

    @pytest.mark.parametrize(
        "field,value",
        [
            ("owner_id", "bob"),
            ("title", "Write memo"),
            ("description", "Yearly numbers"),
            ("completed", True),
            ("priority", "low"),
            ("due_date", datetime(2025, 3, 2, tzinfo=timezone.utc)),
            ("created_at", datetime(2025, 1, 16, tzinfo=timezone.utc)),
        ],
    )
    def test_semantic_fields_change_the_digest(self, field, value):
        assert compute_hash(make_todo(**{field: value})) != compute_hash(make_todo())

    def test_envelope_fields_do_not_change_the_digest(self):
        changed = make_todo(
            sync_status="synced",
            ledger_hash="0xabc",
            updated_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
            sync_retry_count=3,
        )
        assert compute_hash(changed) == compute_hash(make_todo())

    def test_sub_millisecond_difference_is_ignored(self):
        base = make_todo()
        shifted = make_todo(created_at=base["created_at"] + timedelta(microseconds=100))
        assert compute_hash(shifted) == compute_hash(base)

    def test_missing_created_at_is_an_error(self):
        with pytest.raises(ValueError):
            compute_hash(make_todo(created_at=None))


class TestVerifyHash:
    def test_case_insensitive(self):
        todo = make_todo()
        digest = compute_hash(todo)
        assert verify_hash(todo, digest.upper().replace("0X", "0x"))

    def test_mismatch(self):
        assert not verify_hash(make_todo(), compute_hash(make_todo(title="other")))


class TestBytes32Helpers:
    def test_round_trip(self):
        digest = compute_hash(make_todo())
        assert bytes32_to_hex(hex_to_bytes32(digest)) == digest

    def test_left_pads_short_values(self):
        assert hex_to_bytes32("0x01") == b"\x00" * 31 + b"\x01"

    def test_rejects_values_longer_than_32_bytes(self):
        with pytest.raises(ValueError):
            hex_to_bytes32("0x" + "ab" * 33)

    def test_zero_digest(self):
        assert is_zero_digest(ZERO_DIGEST)
        assert is_zero_digest("")
        assert not is_zero_digest(compute_hash(make_todo()))
