from datetime import datetime, timedelta, timezone

import pytest

from services.payload_utils import (
    REDACTED, build_event_key, extract_safe_payload, format_lag,
    get_bucket_timestamp, hash_payload, payload_identity, to_naive_utc,
)


def test_hash_is_independent_of_key_order():
    a = {"patientRid": 7, "visit": {"room": "A", "doctor": 3}, "tags": [1, 2]}
    b = {"tags": [1, 2], "visit": {"doctor": 3, "room": "A"}, "patientRid": 7}
    assert hash_payload(a) == hash_payload(b)


def test_hash_changes_with_content():
    assert hash_payload({"id": 1}) != hash_payload({"id": 2})
    # List order is content
    assert hash_payload({"tags": [1, 2]}) != hash_payload({"tags": [2, 1]})


def test_extract_safe_payload_redacts_sensitive_fields():
    payload = {
        "name": "Ana",
        "password": "hunter2",
        "nested": {"api_key": "abc", "user_token": "xyz", "note": "ok"},
        "items": [{"Authorization": "Bearer x", "qty": 2}],
    }
    safe = extract_safe_payload(payload)

    assert safe["name"] == "Ana"
    assert safe["password"] == REDACTED
    assert safe["nested"] == {"api_key": REDACTED, "note": "ok", "user_token": REDACTED}
    assert safe["items"] == [{"Authorization": REDACTED, "qty": 2}]
    # Input not mutated
    assert payload["password"] == "hunter2"


def test_extract_safe_payload_is_deterministic():
    a = extract_safe_payload({"b": 1, "a": {"secret": 1, "z": 2}})
    b = extract_safe_payload({"a": {"z": 2, "secret": 9}, "b": 1})
    assert list(a) == ["a", "b"]
    assert a == b


def test_extract_safe_payload_clips_long_strings_and_deep_nesting():
    deep = {"l1": {"l2": {"l3": {"l4": {"l5": {"l6": {"l7": 1}}}}}}}
    safe = extract_safe_payload({"text": "x" * 600, "deep": deep})
    assert safe["text"].endswith("...")
    assert len(safe["text"]) == 503
    assert "..." in str(safe["deep"])


def test_bucket_timestamp_floors_to_bucket_start():
    ts = datetime(2024, 3, 20, 10, 47, 12)
    assert get_bucket_timestamp(ts, minutes=60) == datetime(2024, 3, 20, 10, 0)
    assert get_bucket_timestamp(ts, minutes=5) == datetime(2024, 3, 20, 10, 45)
    assert get_bucket_timestamp(datetime(2024, 3, 20, 10, 0), minutes=60) == datetime(2024, 3, 20, 10, 0)


def test_to_naive_utc_converts_aware_timestamps():
    aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(aware) == datetime(2024, 1, 1, 10, 0)
    naive = datetime(2024, 1, 1, 12, 0)
    assert to_naive_utc(naive) is naive


@pytest.mark.parametrize("payload,expected", [
    ({"id": 5, "patientRid": 9}, "5"),
    ({"patientRid": 9, "mrn": "M1"}, "9"),
    ({"appointmentId": "A-1"}, "A-1"),
    ({"billId": 77}, "77"),
    ({"mrn": "M1"}, "M1"),
])
def test_payload_identity_uses_first_present_field(payload, expected):
    assert payload_identity(payload) == expected


def test_payload_identity_falls_back_to_truncated_serialization():
    payload = {"description": "y" * 300}
    identity = payload_identity(payload)
    assert len(identity) == 100
    assert identity.startswith('{"description":"yyy')


def test_build_event_key():
    assert build_event_key("LAB_RESULT", {"id": 42}, 7) == "LAB_RESULT-42-7"


@pytest.mark.parametrize("ms,expected", [
    (None, "unknown"),
    (250, "250ms"),
    (4500, "4s"),
    (125000, "2m"),
    (3 * 3600000 + 5, "3h"),
])
def test_format_lag(ms, expected):
    assert format_lag(ms) == expected
