"""
test_image — runtime image assembly.

Tests verify invariant properties:
  - The image holds exactly one file, the binary at app/oxker.
  - The environment is exactly OXKER_RUNTIME=container.
  - The entry point is the binary, exec-form, with no Cmd.
  - The same artifact always produces the same bytes.
  - A failed assembly leaves no image behind.
"""
import io
import json
import tarfile

import pytest

from conftest import EM_ARM, make_elf
from oxker_pipeline.core.image import assemble_image, inspect_image
from oxker_pipeline.core.target import resolve_target
from oxker_pipeline.errors import AssemblyError


@pytest.fixture
def artifact(tmp_path):
    return make_elf(tmp_path / "artifacts" / "oxker")


class TestAssemble:

    def test_single_file(self, artifact, tmp_path):
        result = assemble_image(artifact, resolve_target("amd64", "amd64"), tmp_path / "image.tar")
        summary = inspect_image(result.path)

        assert summary.files == ["app/oxker"]
        assert summary.executables == ["app/oxker"]
        assert summary.directories == ["app"]
        assert summary.layer_count == 1
        assert result.files == ["app/oxker"]

    def test_runtime_marker(self, artifact, tmp_path):
        result = assemble_image(artifact, resolve_target("amd64", "amd64"), tmp_path / "image.tar")
        summary = inspect_image(result.path)

        assert summary.env == ["OXKER_RUNTIME=container"]
        assert summary.env_map() == {"OXKER_RUNTIME": "container"}

    def test_entrypoint(self, artifact, tmp_path):
        result = assemble_image(artifact, resolve_target("amd64", "amd64"), tmp_path / "image.tar")
        summary = inspect_image(result.path)

        assert summary.entrypoint == ["/app/oxker"]
        assert summary.cmd is None
        assert summary.os == "linux"
        assert summary.architecture == "amd64"

    def test_arm_variant(self, tmp_path):
        artifact = make_elf(tmp_path / "oxker", machine=EM_ARM, elfclass=32)
        result = assemble_image(artifact, resolve_target("arm", "amd64"), tmp_path / "image.tar")
        summary = inspect_image(result.path)

        assert summary.architecture == "arm"
        assert summary.variant == "v7"

    def test_layer_carries_artifact_bytes(self, artifact, tmp_path):
        result = assemble_image(artifact, resolve_target("amd64", "amd64"), tmp_path / "image.tar")
        layer_name = "blobs/sha256/" + result.layer_digest.split(":", 1)[1]

        with tarfile.open(result.path) as outer:
            layer_bytes = outer.extractfile(layer_name).read()
        with tarfile.open(fileobj=io.BytesIO(layer_bytes)) as layer:
            member = layer.getmember("app/oxker")
            assert member.mode == 0o755
            assert member.mtime == 0
            assert layer.extractfile(member).read() == artifact.read_bytes()

    def test_deterministic(self, artifact, tmp_path):
        spec = resolve_target("amd64", "amd64")
        first = assemble_image(artifact, spec, tmp_path / "a" / "image.tar")
        second = assemble_image(artifact, spec, tmp_path / "b" / "image.tar")

        assert first.sha256 == second.sha256
        assert first.path.read_bytes() == second.path.read_bytes()
        assert first.manifest_digest == second.manifest_digest

    def test_docker_archive_manifest(self, artifact, tmp_path):
        result = assemble_image(
            artifact, resolve_target("amd64", "amd64"), tmp_path / "image.tar", ref_name="oxker:local"
        )
        with tarfile.open(result.path) as outer:
            names = outer.getnames()
            docker = json.loads(outer.extractfile("manifest.json").read())

        assert "oci-layout" in names
        assert "index.json" in names
        assert docker[0]["RepoTags"] == ["oxker:local"]
        assert docker[0]["Layers"] == ["blobs/sha256/" + result.layer_digest.split(":", 1)[1]]
        assert inspect_image(result.path).ref_names == ["oxker:local"]

    def test_missing_artifact(self, tmp_path):
        output = tmp_path / "image.tar"
        with pytest.raises(AssemblyError) as exc:
            assemble_image(tmp_path / "absent", resolve_target("amd64", "amd64"), output)
        assert exc.value.exit_code == 5
        assert not output.exists()

    def test_replaces_previous_image(self, artifact, tmp_path):
        output = tmp_path / "image.tar"
        output.write_bytes(b"stale")
        result = assemble_image(artifact, resolve_target("amd64", "amd64"), output)
        assert inspect_image(result.path).files == ["app/oxker"]
        assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".image.tar")] == []


class TestInspect:

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            inspect_image(tmp_path / "image.tar")

    def test_not_a_tarball(self, tmp_path):
        path = tmp_path / "image.tar"
        path.write_text("definitely not a tar archive\n")
        with pytest.raises(ValueError, match="Not an OCI image layout"):
            inspect_image(path)

    def test_tarball_without_index(self, tmp_path):
        path = tmp_path / "image.tar"
        data = b'{"imageLayoutVersion": "1.0.0"}'
        with tarfile.open(path, mode="w") as tar:
            info = tarfile.TarInfo("oci-layout")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        with pytest.raises(ValueError, match="index.json"):
            inspect_image(path)
