"""Tests for backup sealing and checksum validation."""

import copy

from crm_cache.services.backup.integrity import calculate_checksum, seal, serialize, validate_integrity


def _payload():
    return {
        "metadata": {"backup_id": "full_1", "timestamp": "2024-01-01T00:00:00+00:00",
                     "type": "full", "version": "1.0"},
        "local_storage": {"leads_1": '{"name": "Acme Roofing"}', "theme": "dark"},
        "cache_entries": {"calc:2000": {"ridgeVents": 8, "turbineVents": 2}},
    }


def test_checksum_is_rolling_hash_in_hex():
    assert calculate_checksum("") == "0"
    assert calculate_checksum("a") == "61"
    assert calculate_checksum("ab") == "c21"


def test_checksum_wraps_to_signed_32_bits():
    checksum = calculate_checksum("x" * 50)
    value = int(checksum, 16)
    assert -2**31 <= value < 2**31


def test_serialize_is_canonical():
    assert serialize({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


def test_seal_stamps_size_and_checksum():
    payload = _payload()
    serialized, size, checksum = seal(payload)

    assert payload["metadata"]["size"] == size == len(serialized.encode("utf-8"))
    assert payload["metadata"]["checksum"] == checksum == calculate_checksum(serialized)
    assert validate_integrity(payload) is True


def test_key_order_does_not_matter():
    payload = _payload()
    seal(payload)
    reordered = dict(reversed(list(copy.deepcopy(payload).items())))
    assert validate_integrity(reordered) is True


def test_single_character_change_fails_validation():
    payload = _payload()
    seal(payload)
    payload["local_storage"]["theme"] = "dark!"
    assert validate_integrity(payload) is False


def test_missing_checksum_fails_validation():
    payload = _payload()
    seal(payload)
    del payload["metadata"]["checksum"]
    assert validate_integrity(payload) is False


def test_size_mismatch_alone_only_warns():
    payload = _payload()
    seal(payload)
    payload["metadata"]["size"] += 1
    assert validate_integrity(payload) is True


def test_malformed_payloads_fail_validation():
    assert validate_integrity(None) is False
    assert validate_integrity("not a payload") is False
    assert validate_integrity({"local_storage": {}}) is False
