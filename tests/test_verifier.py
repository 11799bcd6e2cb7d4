import re

import pytest

from airlite.errors import ChecksumMismatch, ContentMismatch, ExternalToolFailure, FormatError
from airlite.services import patch_engine
from airlite.services.container import encode
from airlite.services.storage import LATEST
from airlite.services.verifier import PatchVerifier

from conftest import payload, snapshot_tree


@pytest.fixture
def files(tmp_path):
    old, new = payload(0), payload(1)
    paths = {
        "old": tmp_path / "assets.0.tar",
        "patch": tmp_path / "patch",
        "expected": tmp_path / "assets.1.tar",
    }
    paths["old"].write_bytes(old)
    paths["patch"].write_bytes(encode(1, patch_engine.diff(old, new)))
    paths["expected"].write_bytes(new)
    return paths


def test_verify_good_patch(files):
    assert PatchVerifier().verify(files["old"], files["patch"], files["expected"]) == 1


def test_verify_tampered_patch(files):
    data = bytearray(files["patch"].read_bytes())
    data[-1] ^= 0x01
    files["patch"].write_bytes(bytes(data))
    with pytest.raises(ChecksumMismatch, match=re.escape(str(files["patch"]))):
        PatchVerifier().verify(files["old"], files["patch"], files["expected"])


def test_verify_truncated_patch(files):
    files["patch"].write_bytes(files["patch"].read_bytes()[:40])
    with pytest.raises(FormatError):
        PatchVerifier().verify(files["old"], files["patch"], files["expected"])


def test_verify_wrong_expected_payload(files):
    files["expected"].write_bytes(payload(2))
    with pytest.raises(ContentMismatch, match="version 1"):
        PatchVerifier().verify(files["old"], files["patch"], files["expected"])


def test_verify_wrong_old_payload(files):
    files["old"].write_bytes(payload(5))
    with pytest.raises((ContentMismatch, ExternalToolFailure)):
        PatchVerifier().verify(files["old"], files["patch"], files["expected"])


def test_verify_store(builder, store):
    for i in range(4):
        builder.build_from_payload(payload(i))
    before = snapshot_tree(store.base)

    report = PatchVerifier().verify_store(store)

    assert report.ok
    assert report.latest == 3
    assert report.passed == [3, 2, 1, 0]
    assert report.missing == []
    assert snapshot_tree(store.base) == before


def test_verify_store_reports_tampered_patch(builder, store):
    for i in range(3):
        builder.build_from_payload(payload(i))
    data = bytearray(store.patch_path(0).read_bytes())
    data[70] ^= 0xFF
    store.patch_path(0).write_bytes(bytes(data))

    report = PatchVerifier().verify_store(store)

    assert not report.ok
    assert list(report.failed) == [0]
    assert "checksum" in report.failed[0]
    assert report.passed == [2, 1]
    assert report.as_dict()["failed"] == {"0": report.failed[0]}


def test_verify_store_reports_tampered_base(builder, store):
    builder.build_from_payload(payload(0))
    store.raw_assets(LATEST).write_bytes(b"swapped raw payload")
    report = PatchVerifier().verify_store(store)
    assert list(report.failed) == [0]


def test_verify_store_on_empty_store(store):
    report = PatchVerifier().verify_store(store)
    assert report.ok and report.latest is None and report.passed == []
