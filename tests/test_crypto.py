"""Unit tests for app/utils/crypto.py."""

from datetime import UTC, datetime, timedelta

from app.utils.crypto import generate_nonce, is_timestamp_valid, sign_payload, verify_signature


def test_sign_verify_round_trip() -> None:
    ts = datetime.now(UTC).isoformat()
    sig = sign_payload("secret", ts, b'{"a":1}')
    assert len(sig) == 64
    assert verify_signature("secret", sig, ts, b'{"a":1}')


def test_str_and_bytes_bodies_sign_alike() -> None:
    assert sign_payload("k", "t", '{"a":1}') == sign_payload("k", "t", b'{"a":1}')


def test_verify_tampered_body() -> None:
    ts = datetime.now(UTC).isoformat()
    sig = sign_payload("secret", ts, b'{"a":1}')
    assert not verify_signature("secret", sig, ts, b'{"a":2}')


def test_verify_wrong_secret_or_timestamp() -> None:
    ts = datetime.now(UTC).isoformat()
    sig = sign_payload("secret", ts, b"{}")
    assert not verify_signature("other", sig, ts, b"{}")
    assert not verify_signature("secret", sig, ts + "0", b"{}")
    assert not verify_signature("secret", "", ts, b"{}")


def test_timestamp_valid_naive_rejected() -> None:
    assert not is_timestamp_valid(datetime.now().isoformat())


def test_timestamp_window() -> None:
    assert is_timestamp_valid(datetime.now(UTC).isoformat())
    old = (datetime.now(UTC) - timedelta(seconds=301)).isoformat()
    assert not is_timestamp_valid(old, max_age_seconds=300)
    assert is_timestamp_valid(old, max_age_seconds=600)


def test_timestamp_garbage() -> None:
    assert not is_timestamp_valid("not-a-date")
    assert not is_timestamp_valid("")


def test_nonce_unique() -> None:
    assert generate_nonce() != generate_nonce()
    assert len(generate_nonce()) == 32
