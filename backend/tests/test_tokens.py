import base64
import json
from datetime import datetime, timezone

import pytest

from backend.errors import MalformedToken
from backend.tokens import decode_token, encode_token, rotation_slot, slot_valid_until


def _raw(payload) -> str:
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()


def test_encode_then_decode_keeps_fields():
    now = datetime(2026, 3, 2, 9, 0, 5, tzinfo=timezone.utc)
    token = encode_token(42, "s3cret", now)

    assert "=" not in token
    parsed = decode_token(token)
    assert parsed == {"session_id": 42, "slot": rotation_slot(now), "secret": "s3cret"}


def test_slot_changes_every_ten_seconds():
    base = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)
    later = datetime(2026, 3, 2, 9, 0, 9, tzinfo=timezone.utc)
    next_slot = datetime(2026, 3, 2, 9, 0, 10, tzinfo=timezone.utc)

    assert rotation_slot(base) == rotation_slot(later)
    assert rotation_slot(next_slot) == rotation_slot(base) + 1
    assert encode_token(1, "x", base) != encode_token(1, "x", next_slot)
    assert slot_valid_until(rotation_slot(base)) == int(next_slot.timestamp())


@pytest.mark.parametrize(
    "token",
    [
        "",
        "   ",
        "not base64 !!",
        _raw([1, 2, 3]),
        _raw({"slot": 1, "secret": "x"}),
        _raw({"session_id": "7", "slot": 1, "secret": "x"}),
        _raw({"session_id": True, "slot": 1, "secret": "x"}),
        _raw({"session_id": 0, "slot": 1, "secret": "x"}),
        _raw({"session_id": 7, "slot": -1, "secret": "x"}),
        _raw({"session_id": 7, "slot": 1, "secret": ""}),
        _raw({"session_id": 2**63, "slot": 1, "secret": "x"}),
        _raw({"session_id": 2**70, "slot": 1, "secret": "x"}),
        _raw({"session_id": 7, "slot": 2**70, "secret": "x"}),
        base64.urlsafe_b64encode(b"\xff\xfe").decode(),
    ],
)
def test_decode_rejects_malformed_tokens(token):
    with pytest.raises(MalformedToken):
        decode_token(token)


def test_missing_session_id_has_specific_message():
    with pytest.raises(MalformedToken) as exc:
        decode_token(_raw({"slot": 1, "secret": "x"}))
    assert exc.value.detail == "Token missing session ID."
    assert exc.value.status_code == 400
