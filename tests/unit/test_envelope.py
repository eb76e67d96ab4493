from __future__ import annotations

import pytest

from fastlane_sync.worksheet.envelope import BARE_ARRAY, DATA_ROWS, ROWS, normalize_envelope
from fastlane_sync.worksheet.errors import (
    AuthenticationError,
    MalformedResponseError,
    UpstreamError,
    classify_rejection,
)


def test_data_rows_shape():
    env = normalize_envelope({"success": True, "data": {"rows": [{"rowid": "a"}], "total": 7}})
    assert env.shape == DATA_ROWS
    assert env.rows == [{"rowid": "a"}]
    assert env.total == 7
    assert env.total_reported is True


def test_rows_shape_without_total_falls_back_to_len():
    env = normalize_envelope({"rows": [{"rowid": "a"}, {"rowid": "b"}]})
    assert env.shape == ROWS
    assert env.total == 2
    assert env.total_reported is False


def test_bare_array_shape():
    env = normalize_envelope([{"rowid": "a"}])
    assert env.shape == BARE_ARRAY
    assert env.total == 1
    assert env.total_reported is False


def test_string_total_is_parsed_but_not_reported():
    env = normalize_envelope({"data": {"rows": [], "total": "12"}})
    assert env.total == 12
    assert env.total_reported is False


def test_success_false_with_auth_code_is_authentication_error():
    with pytest.raises(AuthenticationError):
        normalize_envelope({"success": False, "error_code": 10101, "error_msg": "令牌不存在"})


def test_success_false_other_code_is_upstream_error():
    with pytest.raises(UpstreamError) as e:
        normalize_envelope({"success": False, "error_code": 10007, "error_msg": "worksheet not found"})
    assert not isinstance(e.value, AuthenticationError)
    assert "10007" in str(e.value)


@pytest.mark.parametrize(
    "payload",
    [
        "text",
        42,
        {"data": {"items": []}},
        {"rows": {"a": 1}},
        {"rows": ["not-an-object"]},
        [1, 2],
    ],
)
def test_malformed_shapes(payload):
    with pytest.raises(MalformedResponseError):
        normalize_envelope(payload)


def test_classify_rejection_by_message_hint():
    err = classify_rejection(None, "Invalid sign", status_code=200)
    assert isinstance(err, AuthenticationError)
    assert err.status_code == 200
    assert err.error_type == "AUTHENTICATION_ERROR"
