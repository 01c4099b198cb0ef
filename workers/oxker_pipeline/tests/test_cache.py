"""
test_cache — dependency cache and manifest identity.

Tests verify invariant properties:
  - The manifest hash ignores application source.
  - A dependency change yields a new cache key; a source change does not.
  - A warm cache is reused without running cargo and left byte-identical.
  - A failed dependency build publishes nothing and keeps cargo's stderr.
"""
import json

import pytest

from conftest import FakeToolchain, tree_digest
from oxker_pipeline.core.cache import CACHE_RECORD, cache_key, warm_dependency_cache
from oxker_pipeline.core.manifest import load_manifest, snapshot_source
from oxker_pipeline.core.target import resolve_target
from oxker_pipeline.errors import DependencyResolutionError


class TestManifest:

    def test_declared_dependencies(self, crate_dir):
        manifest = load_manifest(crate_dir)
        assert manifest.package_name == "oxker"
        assert manifest.package_version == "0.6.4"
        assert manifest.has_lockfile is True
        assert dict(manifest.dependencies) == {
            "bollard": "0.16",
            "crossterm": "0.27",
            "tokio": "1.36",
        }
        assert manifest.manifest_files() == ["Cargo.toml", "Cargo.lock"]

    def test_source_edit_keeps_manifest_hash(self, crate_dir):
        before = load_manifest(crate_dir)
        src_before = snapshot_source(crate_dir)
        (crate_dir / "src" / "main.rs").write_text('fn main() { println!("changed"); }\n')

        assert load_manifest(crate_dir).manifest_sha256 == before.manifest_sha256
        assert snapshot_source(crate_dir).snapshot_sha256 != src_before.snapshot_sha256

    def test_lockfile_edit_changes_manifest_hash(self, crate_dir):
        before = load_manifest(crate_dir).manifest_sha256
        with open(crate_dir / "Cargo.lock", "a") as f:
            f.write('\n[[package]]\nname = "tokio"\nversion = "1.36.0"\n')
        assert load_manifest(crate_dir).manifest_sha256 != before

    def test_missing_manifest(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_manifest(tmp_path)

    def test_manifest_without_package(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("[dependencies]\nserde = \"1\"\n")
        with pytest.raises(ValueError):
            load_manifest(tmp_path)

    def test_invalid_toml(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("[package\nname = ")
        with pytest.raises(ValueError):
            load_manifest(tmp_path)


class TestCacheKey:

    def test_dependency_change_new_key(self, crate_dir):
        spec = resolve_target("amd64", "amd64")
        before = cache_key(spec, load_manifest(crate_dir))
        toml = (crate_dir / "Cargo.toml").read_text()
        (crate_dir / "Cargo.toml").write_text(toml + 'serde = "1.0"\n')
        assert cache_key(spec, load_manifest(crate_dir)) != before

    def test_source_change_same_key(self, crate_dir):
        spec = resolve_target("amd64", "amd64")
        before = cache_key(spec, load_manifest(crate_dir))
        (crate_dir / "src" / "main.rs").write_text("fn main() { loop {} }\n")
        assert cache_key(spec, load_manifest(crate_dir)) == before

    def test_keys_differ_per_target(self, crate_dir):
        manifest = load_manifest(crate_dir)
        keys = {cache_key(resolve_target(a, "amd64"), manifest) for a in ("amd64", "arm64", "arm")}
        assert len(keys) == 3

    def test_cross_and_native_differ(self, crate_dir):
        manifest = load_manifest(crate_dir)
        native = cache_key(resolve_target("arm64", "arm64"), manifest)
        cross = cache_key(resolve_target("arm64", "amd64"), manifest)
        assert native != cross


class TestWarmCache:

    def test_miss_then_hit(self, crate_dir, settings, logs_dir, toolchain):
        spec = resolve_target("amd64", "amd64")
        manifest = load_manifest(crate_dir)

        first = warm_dependency_cache(spec, manifest, crate_dir, settings, logs_dir, runner=toolchain)
        assert first.hit is False
        assert ("dep", "tokio") in toolchain.compiled
        assert first.cache_dir == settings.CACHE_ROOT / spec.target_triple / first.key
        record = json.loads((first.cache_dir / CACHE_RECORD).read_text())
        assert record["key"] == first.key
        assert record["target_triple"] == "x86_64-unknown-linux-musl"

        digest = tree_digest(first.cache_dir)
        calls = len(toolchain.calls)

        second = warm_dependency_cache(spec, manifest, crate_dir, settings, logs_dir, runner=toolchain)
        assert second.hit is True
        assert second.key == first.key
        assert second.command is None
        assert len(toolchain.calls) == calls
        assert tree_digest(first.cache_dir) == digest

    def test_skeleton_has_no_application_source(self, crate_dir, settings, logs_dir, toolchain):
        spec = resolve_target("amd64", "amd64")
        result = warm_dependency_cache(
            spec, load_manifest(crate_dir), crate_dir, settings, logs_dir, runner=toolchain
        )
        skeleton_main = (result.cache_dir / "skeleton" / "src" / "main.rs").read_text()
        assert skeleton_main == "fn main() {}\n"
        assert (result.cache_dir / "skeleton" / "Cargo.lock").is_file()

    def test_cargo_env(self, crate_dir, settings, logs_dir, toolchain):
        spec = resolve_target("arm64", "amd64")
        warm_dependency_cache(spec, load_manifest(crate_dir), crate_dir, settings, logs_dir, runner=toolchain)

        argv = toolchain.calls[-1]
        env = toolchain.envs[-1]
        assert argv == ["cargo", "build", "--release", "--target", "aarch64-unknown-linux-musl"]
        assert env["CARGO_TARGET_AARCH64_UNKNOWN_LINUX_MUSL_LINKER"] == "aarch64-linux-gnu-gcc"
        assert "link-arg=-lgcc" in env["CARGO_TARGET_AARCH64_UNKNOWN_LINUX_MUSL_RUSTFLAGS"]

    def test_failure_publishes_nothing(self, crate_dir, settings, logs_dir):
        stderr = "error: failed to select a version for the requirement `bollard = \"^99\"`\n"
        failing = FakeToolchain(fail_on=lambda argv, cwd: True, fail_stderr=stderr)
        spec = resolve_target("amd64", "amd64")

        with pytest.raises(DependencyResolutionError) as exc:
            warm_dependency_cache(spec, load_manifest(crate_dir), crate_dir, settings, logs_dir, runner=failing)

        assert exc.value.diagnostics == stderr
        assert exc.value.stage == "dependency_cache"
        triple_dir = settings.CACHE_ROOT / spec.target_triple
        assert list(triple_dir.iterdir()) == []
        assert (logs_dir / "dependency_cache.cargo-build.stderr").read_text() == stderr

    def test_corrupt_record_rebuilt(self, crate_dir, settings, logs_dir, toolchain):
        spec = resolve_target("amd64", "amd64")
        manifest = load_manifest(crate_dir)
        first = warm_dependency_cache(spec, manifest, crate_dir, settings, logs_dir, runner=toolchain)
        (first.cache_dir / CACHE_RECORD).write_text("{not json")

        again = warm_dependency_cache(spec, manifest, crate_dir, settings, logs_dir, runner=toolchain)
        assert again.hit is False
        assert json.loads((again.cache_dir / CACHE_RECORD).read_text())["key"] == first.key
