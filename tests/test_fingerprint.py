from datetime import datetime, timezone

import pytest

from schoolsync.services.fingerprint import fingerprint

BASE = (
    "Spring concert",
    "The concert is on March 15 at 6pm.",
    "music@school.org",
    datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc),
)


def test_same_inputs_same_hash():
    assert fingerprint(*BASE) == fingerprint(*BASE)


def test_hash_is_sha256_hex():
    digest = fingerprint(*BASE)
    assert len(digest) == 64
    int(digest, 16)


@pytest.mark.parametrize("index, replacement", [
    (0, "Spring concert!"),
    (1, "The concert is on March 16 at 6pm."),
    (2, "band@school.org"),
    (3, datetime(2024, 3, 1, 9, 1, tzinfo=timezone.utc)),
])
def test_changing_any_field_changes_hash(index, replacement):
    changed = list(BASE)
    changed[index] = replacement
    assert fingerprint(*changed) != fingerprint(*BASE)


def test_field_boundaries_matter():
    sent = BASE[3]
    assert fingerprint("ab", "c", "x", sent) != fingerprint("a", "bc", "x", sent)


def test_missing_fields_allowed():
    assert fingerprint("", "", "", None) == fingerprint(None, None, None, None)
