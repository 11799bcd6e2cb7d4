import os
import subprocess
from pathlib import Path

import pytest

from airlite.errors import BuildFailed, ExternalToolFailure, IdenticalPayload, VersionOrderError
from airlite.services import patch_engine
from airlite.services.builder import BuildState, PatchBuilder, StoreState
from airlite.services.bundler import archive_directory, bundle_command
from airlite.services.container import decode, read_header
from airlite.services.storage import LATEST, VersionStore

from conftest import FakeBundler, payload, snapshot_tree


def seed(builder, n):
    for i in range(n):
        builder.build_from_payload(payload(i))


def test_first_build_goes_to_latest(builder, store, bundler):
    result = builder.build_new_patch()

    assert result.version == 0
    assert result.patches == {}
    assert builder.state is BuildState.IDLE
    assert bundler.calls[0][:2] == ("android", "index")
    assert store.latest_pointer() == 0
    assert store.scan_versions() == []
    assert store.meta_path(LATEST).is_file()
    assert not store.intermediates.exists()

    raw = store.raw_assets(LATEST).read_bytes()
    base = decode(store.base_package(LATEST).read_bytes())
    assert base.verified and base.version == 0 and base.payload == raw


def test_versions_stay_contiguous(builder, store):
    n = 5
    for i in range(n):
        result = builder.build_from_payload(payload(i))
        assert result.version == i

    assert store.list_versions() == list(range(n - 1, -1, -1))
    assert read_header(store.base_package(LATEST).read_bytes()).version == n - 1
    for v in range(n - 1):
        assert read_header(store.patch_path(v).read_bytes()).version == n - 1
    VersionStore(store.root, store.platform)  # reopens cleanly


def test_every_old_version_patches_to_new(builder, store):
    a, b, c = payload(0), payload(1), payload(2)
    builder.build_from_payload(a)
    builder.build_from_payload(b)

    result = builder.build_from_payload(c)

    assert result.version == 2
    assert sorted(result.patches) == [0, 1]
    for old, v in ((a, 0), (b, 1)):
        decoded = decode(store.patch_path(v).read_bytes())
        assert decoded.verified and decoded.version == 2
        assert patch_engine.apply(old, decoded.payload) == c
        assert result.patches[v].size == store.patch_path(v).stat().st_size
    assert store.raw_assets(LATEST).read_bytes() == c
    assert store.raw_assets(1).read_bytes() == b


def test_identical_payload_fails_and_leaves_store_untouched(builder, store):
    seed(builder, 2)
    before = snapshot_tree(store.base)

    with pytest.raises(BuildFailed) as err:
        builder.build_from_payload(payload(1))

    assert list(err.value.failures) == [1]
    assert isinstance(err.value.failures[1], IdenticalPayload)
    assert "version 1" in str(err.value)
    assert builder.state is BuildState.FAILED
    assert snapshot_tree(store.base) == before


def test_one_failing_diff_blocks_promotion(store):
    def flaky(old, new):
        if old == payload(0):
            raise RuntimeError("bsdiff crashed")
        return patch_engine.diff(old, new)

    builder = PatchBuilder(store, bundler=FakeBundler(), differ=flaky)
    seed(builder, 3)
    before = snapshot_tree(store.base)

    with pytest.raises(BuildFailed) as err:
        builder.build_from_payload(payload(3))

    assert set(err.value.failures) == {0}
    assert snapshot_tree(store.base) == before
    # a later build without the failure works from Failed
    builder.differ = patch_engine.diff
    assert builder.build_from_payload(payload(3)).version == 3


def test_bundler_stderr_is_fatal(store):
    bundler = FakeBundler(stderr="error: Unable to resolve module")
    builder = PatchBuilder(store, bundler=bundler)

    with pytest.raises(ExternalToolFailure, match="Unable to resolve module"):
        builder.build_new_patch()
    assert builder.state is BuildState.FAILED
    assert store.latest_pointer() is None
    assert not store.intermediates.exists()


def test_bundler_exit_status_is_fatal(store):
    builder = PatchBuilder(store, bundler=FakeBundler(exit_status=1))
    with pytest.raises(ExternalToolFailure, match="status 1"):
        builder.build_new_patch()


def test_bundler_timeout_is_fatal(store):
    exc = subprocess.TimeoutExpired(cmd="react-native", timeout=30)
    builder = PatchBuilder(store, bundler=FakeBundler(exc=exc))
    with pytest.raises(ExternalToolFailure, match="timed out"):
        builder.build_new_patch()
    assert not store.intermediates.exists()


def test_missing_bundler_is_fatal(store):
    builder = PatchBuilder(store, bundler=FakeBundler(exc=FileNotFoundError("react-native")))
    with pytest.raises(ExternalToolFailure, match="Cannot run the bundler"):
        builder.build_new_patch()


def test_empty_bundle_output_is_fatal(store):
    builder = PatchBuilder(store, bundler=FakeBundler(files={}))
    with pytest.raises(ExternalToolFailure, match="wrote nothing"):
        builder.build_new_patch()


def test_explicit_version_must_exceed_next(builder, store, bundler):
    seed(builder, 2)
    with pytest.raises(VersionOrderError):
        builder.build_new_patch(patch_version=1)
    with pytest.raises(VersionOrderError):
        builder.build_new_patch(patch_version=2)
    assert bundler.calls == []

    bundler.files = {"main.jsbundle": b"jump"}
    result = builder.build_new_patch(patch_version=10)
    assert result.version == 10
    assert store.list_versions() == [10, 1, 0]
    assert store.next_version() == 11


def test_build_picks_up_after_kill_between_renames(builder, store):
    seed(builder, 3)
    # latest/ moved to its numbered slot, fresh latest/ never created
    store.path(LATEST).rename(store.path(2))

    reopened = VersionStore(store.root, store.platform)
    assert reopened.latest_pointer() is None
    assert reopened.list_versions() == [2, 1, 0]
    assert reopened.next_version() == 3

    result = PatchBuilder(reopened, bundler=FakeBundler()).build_from_payload(payload(3))
    assert result.version == 3
    assert reopened.list_versions() == [3, 2, 1, 0]
    assert sorted(result.patches) == [0, 1, 2]


def test_store_state_snapshot(builder, store):
    seed(builder, 2)
    snap = StoreState.from_store(store)
    assert snap == StoreState(versions=(1, 0), latest=1, next_version=2)
    assert snap.slot(1) == LATEST
    assert snap.slot(0) == 0


def test_build_result_as_dict(builder):
    seed(builder, 1)
    out = builder.build_from_payload(payload(1)).as_dict()
    assert out["version"] == 1
    assert list(out["patches"]) == ["0"]
    assert out["raw_sha256"] == patch_engine.sha256(payload(1))


def test_archive_is_reproducible(tmp_path):
    for name in ("a", "b"):
        root = tmp_path / name
        (root / "drawable-mdpi").mkdir(parents=True)
        (root / "main.jsbundle").write_bytes(b"bundle")
        (root / "drawable-mdpi" / "logo.png").write_bytes(b"png")
    first = archive_directory(tmp_path / "a")
    os.utime(tmp_path / "b" / "main.jsbundle", (1, 1))
    assert archive_directory(tmp_path / "b") == first


def test_bundle_command():
    cmd = bundle_command("ios", "index", Path("/tmp/out"))
    assert cmd[:4] == ["react-native", "bundle", "--platform", "ios"]
    assert "index.ios.js" in cmd
    assert "/tmp/out/main.jsbundle" in cmd
    with pytest.raises(ValueError):
        bundle_command("windows", "index", Path("/tmp/out"))


def test_killed_build_staging_is_gone_after_next_publish(builder, store):
    seed(builder, 2)
    dead = store.intermediates / "build-dead" / "slot"
    dead.mkdir(parents=True)
    (dead / "assets.tar").write_bytes(b"partial")
    store.path(LATEST).rename(store.path(1))

    reopened = VersionStore(store.root, store.platform)
    fresh = PatchBuilder(reopened, bundler=FakeBundler())
    fresh.build_from_payload(payload(2))
    fresh.build_from_payload(payload(3))

    assert reopened.list_versions() == [3, 2, 1, 0]
    assert not reopened.intermediates.exists()


def published_tree(store):
    return {k: v for k, v in snapshot_tree(store.base).items() if not k.endswith("meta.yaml")}


def test_output_does_not_depend_on_worker_count(tmp_path):
    trees = []
    for workers in (1, 4):
        store = VersionStore(tmp_path / f"workers-{workers}", "android")
        builder = PatchBuilder(store, bundler=FakeBundler(), max_workers=workers)
        for i in range(5):
            builder.build_from_payload(payload(i))
        trees.append(published_tree(store))

    assert trees[0] == trees[1]
    assert "3/patch" in trees[0]
