"""Tests for webhook signature verification."""

import json
import time

import pytest

from app.services import signature
from app.services.signature import SignatureError
from tests.mocks import processor_event, signed, subscription_object

SECRET = "whsec_unit"


def _payload():
    return processor_event(
        "customer.subscription.updated", subscription_object(), event_id="evt_sig"
    )


def test_verify_accepts_valid_signature():
    body, header = signed(_payload(), SECRET)

    event = signature.verify(body, header, SECRET)

    assert event.id == "evt_sig"
    assert event.type == "customer.subscription.updated"
    assert event.data_object["id"] == "sub_test"
    assert event.raw_payload["id"] == "evt_sig"
    assert event.created is not None and event.created.tzinfo is not None


def test_verify_accepts_any_matching_v1_entry():
    body, header = signed(_payload(), SECRET)
    timestamp = header.split(",")[0]
    rolled = f"{timestamp},v1={'0' * 64},{header.split(',', 1)[1]}"

    assert signature.verify(body, rolled, SECRET).id == "evt_sig"


def test_verify_rejects_wrong_secret():
    body, header = signed(_payload(), "whsec_other")

    with pytest.raises(SignatureError, match="No signature matches"):
        signature.verify(body, header, SECRET)


def test_verify_rejects_tampered_body():
    body, header = signed(_payload(), SECRET)
    tampered = body.replace(b"sub_test", b"sub_evil")

    with pytest.raises(SignatureError):
        signature.verify(tampered, header, SECRET)


@pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "t=123"])
def test_verify_rejects_missing_or_malformed_header(header):
    body = json.dumps(_payload()).encode()

    with pytest.raises(SignatureError):
        signature.verify(body, header, SECRET)


def test_verify_rejects_unset_secret():
    body, header = signed(_payload(), SECRET)

    with pytest.raises(SignatureError, match="not configured"):
        signature.verify(body, header, None)


def test_verify_rejects_timestamp_outside_tolerance():
    old = int(time.time()) - 3600
    body, header = signed(_payload(), SECRET, timestamp=old)

    with pytest.raises(SignatureError, match="tolerance"):
        signature.verify(body, header, SECRET, tolerance=300)


def test_verify_uses_injected_clock():
    body, header = signed(_payload(), SECRET, timestamp=1_000_000)

    event = signature.verify(body, header, SECRET, tolerance=300, now=1_000_100)

    assert event.id == "evt_sig"


def test_verify_rejects_signed_non_json():
    body = b"not json"
    header = signature.build_signature_header(body, SECRET)

    with pytest.raises(SignatureError, match="not valid JSON"):
        signature.verify(body, header, SECRET)


def test_verify_rejects_signed_event_without_type():
    body = json.dumps({"id": "evt_no_type", "data": {}}).encode()
    header = signature.build_signature_header(body, SECRET)

    with pytest.raises(SignatureError, match="not a processor event"):
        signature.verify(body, header, SECRET)
