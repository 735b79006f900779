"""Tests for structured relay logging."""

import json
import logging

from mintrelay.core.logging import JsonFormatter, PrettyFormatter, RequestIdFilter, latency_bucket_ms, request_id_ctx_var


def _record(**extra):
    record = logging.LogRecord("mintrelay.relay", logging.INFO, __file__, 1, "relay.submitted", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_lines_carry_relay_context():
    token = request_id_ctx_var.set("rid-7")
    try:
        record = _record(tx_hash="0x" + "ab" * 32, relay_type="mintNFT", nonce="4", wallet=None)
        RequestIdFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        request_id_ctx_var.reset(token)

    assert payload["request_id"] == "rid-7"
    assert payload["relay_type"] == "mintNFT"
    assert payload["nonce"] == "4"
    assert "wallet" not in payload


def test_pretty_line_shortens_hashes():
    record = _record(tx_hash="0x" + "ab" * 32, request_id=None)
    line = PrettyFormatter().format(record)
    assert "tx=0xabab…abab" in line
    assert line.endswith("| relay.submitted")


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(250) == "100-500ms"
    assert latency_bucket_ms(1500) == ">=1000ms"
