"""
Runtime image — package the artifact into a scratch-based OCI image.

The image has exactly one layer holding exactly one file, the binary at
the profile's entry point, plus the directories leading to it. Its
config sets one environment variable (the runtime marker) and an
exec-form entry point, with no Cmd and no shell.

Output is an OCI image-layout tarball. It also carries a docker-archive
manifest.json so ``docker load`` accepts it. Every byte is deterministic:
fixed mtimes and ownership, sorted entries, canonical JSON. The tarball
is written beside its destination and renamed into place, so it is either
complete or absent.
"""
import hashlib
import io
import json
import logging
import os
import tarfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from oxker_pipeline.core.target import ToolchainSpec
from oxker_pipeline.errors import AssemblyError
from oxker_pipeline.io.schema import hash_file
from oxker_pipeline.policy.profile import Profile

logger = logging.getLogger(__name__)

STAGE = "runtime_assembly"

MEDIA_TYPE_INDEX = "application/vnd.oci.image.index.v1+json"
MEDIA_TYPE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
MEDIA_TYPE_CONFIG = "application/vnd.oci.image.config.v1+json"
MEDIA_TYPE_LAYER = "application/vnd.oci.image.layer.v1.tar"
REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"


@dataclass
class ImageResult:
    """What the assembler wrote."""
    path: Path
    sha256: str
    manifest_digest: str
    config_digest: str
    layer_digest: str
    architecture: str
    variant: Optional[str]
    entrypoint: List[str]
    env: List[str]
    files: List[str]


@dataclass
class ImageSummary:
    """What an image tarball contains, read back from disk."""
    architecture: str
    os: str
    variant: Optional[str]
    entrypoint: List[str]
    cmd: Optional[List[str]]
    env: List[str]
    files: List[str]
    directories: List[str]
    executables: List[str]
    layer_count: int
    ref_names: List[str] = field(default_factory=list)

    def env_map(self) -> Dict[str, str]:
        return dict(item.split("=", 1) for item in self.env)


# =============================================================================
# Deterministic tar helpers
# =============================================================================

def _canonical_json(obj) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _tar_info(name: str, is_dir: bool, size: int = 0, mode: int = 0o644) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE if is_dir else tarfile.REGTYPE
    info.mode = 0o755 if is_dir else mode
    info.size = 0 if is_dir else size
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _build_tar(entries: List[Tuple[str, Optional[bytes], int]]) -> bytes:
    """
    Build an uncompressed tar from (name, data_or_None_for_dir, mode).
    Entries are written in the order given.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
        for name, data, mode in entries:
            if data is None:
                tar.addfile(_tar_info(name, is_dir=True))
            else:
                tar.addfile(_tar_info(name, is_dir=False, size=len(data), mode=mode), io.BytesIO(data))
    return buf.getvalue()


def _parent_dirs(path: PurePosixPath) -> List[str]:
    parents = [p for p in reversed(path.parents) if str(p) not in (".", "")]
    return [f"{p.as_posix()}/" for p in parents]


# =============================================================================
# Assembly
# =============================================================================

def build_layer(binary: bytes, entrypoint: str) -> bytes:
    """The single image layer: parent directories plus the binary."""
    in_image = PurePosixPath(entrypoint.lstrip("/"))
    entries: List[Tuple[str, Optional[bytes], int]] = [(d, None, 0o755) for d in _parent_dirs(in_image)]
    entries.append((in_image.as_posix(), binary, 0o755))
    return _build_tar(entries)


def build_config(
    layer_digest: str,
    architecture: str,
    variant: Optional[str],
    entrypoint: str,
    env: Tuple[str, str],
) -> dict:
    config = {
        "architecture": architecture,
        "os": "linux",
        "config": {
            "Env": [f"{env[0]}={env[1]}"],
            "Entrypoint": [entrypoint],
        },
        "rootfs": {"type": "layers", "diff_ids": [layer_digest]},
    }
    if variant:
        config["variant"] = variant
    return config


def assemble_image(
    artifact: Path,
    spec: ToolchainSpec,
    output: Path,
    profile: Optional[Profile] = None,
    ref_name: Optional[str] = None,
) -> ImageResult:
    """
    Package *artifact* into an image tarball at *output*.

    Raises
    ------
    AssemblyError
        If the artifact is missing, or the tarball cannot be written.
        No file is left at *output* in either case.
    """
    if profile is None:
        profile = Profile.v1()
    if not artifact.is_file():
        raise AssemblyError(f"Artifact not found: {artifact}", stage=STAGE)

    entry = profile.entry(spec.arch)
    binary = artifact.read_bytes()

    layer = build_layer(binary, profile.image_entrypoint)
    layer_digest = _digest(layer)

    config = _canonical_json(
        build_config(
            layer_digest,
            entry.oci_architecture,
            entry.oci_variant,
            profile.image_entrypoint,
            profile.runtime_env,
        )
    )
    config_digest = _digest(config)

    manifest = _canonical_json({
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_MANIFEST,
        "config": {"mediaType": MEDIA_TYPE_CONFIG, "digest": config_digest, "size": len(config)},
        "layers": [{"mediaType": MEDIA_TYPE_LAYER, "digest": layer_digest, "size": len(layer)}],
    })
    manifest_digest = _digest(manifest)

    platform = {"architecture": entry.oci_architecture, "os": "linux"}
    if entry.oci_variant:
        platform["variant"] = entry.oci_variant
    descriptor = {
        "mediaType": MEDIA_TYPE_MANIFEST,
        "digest": manifest_digest,
        "size": len(manifest),
        "platform": platform,
    }
    if ref_name:
        descriptor["annotations"] = {REF_NAME_ANNOTATION: ref_name}
    index = _canonical_json({
        "schemaVersion": 2,
        "mediaType": MEDIA_TYPE_INDEX,
        "manifests": [descriptor],
    })

    def blob_name(digest: str) -> str:
        return "blobs/sha256/" + digest.split(":", 1)[1]

    docker_manifest = _canonical_json([{
        "Config": blob_name(config_digest),
        "RepoTags": [ref_name] if ref_name else None,
        "Layers": [blob_name(layer_digest)],
    }])

    blobs = sorted(
        [(blob_name(d), data) for d, data in (
            (layer_digest, layer),
            (config_digest, config),
            (manifest_digest, manifest),
        )]
    )
    outer: List[Tuple[str, Optional[bytes], int]] = [
        ("blobs/", None, 0o755),
        ("blobs/sha256/", None, 0o755),
    ]
    outer += [(name, data, 0o644) for name, data in blobs]
    outer += [
        ("index.json", index, 0o644),
        ("manifest.json", docker_manifest, 0o644),
        ("oci-layout", _canonical_json({"imageLayoutVersion": "1.0.0"}), 0o644),
    ]
    tarball = _build_tar(outer)

    output.parent.mkdir(parents=True, exist_ok=True)
    tmp = output.with_name(f".{output.name}.tmp-{uuid.uuid4().hex}")
    try:
        tmp.write_bytes(tarball)
        os.replace(tmp, output)
    except OSError as e:
        raise AssemblyError(f"Could not write image to {output}: {e}", stage=STAGE) from e
    finally:
        if tmp.exists():
            tmp.unlink()

    logger.info(f"Image assembled: {output} ({manifest_digest})")
    return ImageResult(
        path=output,
        sha256=hash_file(output),
        manifest_digest=manifest_digest,
        config_digest=config_digest,
        layer_digest=layer_digest,
        architecture=entry.oci_architecture,
        variant=entry.oci_variant,
        entrypoint=[profile.image_entrypoint],
        env=[f"{profile.runtime_env[0]}={profile.runtime_env[1]}"],
        files=[PurePosixPath(profile.image_entrypoint.lstrip("/")).as_posix()],
    )


# =============================================================================
# Inspection
# =============================================================================

def _read_member(tar: tarfile.TarFile, name: str) -> bytes:
    member = tar.extractfile(name)
    if member is None:
        raise ValueError(f"Image entry is not a file: {name}")
    return member.read()


def inspect_image(path: Path) -> ImageSummary:
    """
    Read an image tarball written by assemble_image.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If the tarball is not an OCI image layout with one manifest.
    """
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    try:
        return _summarize(path)
    except (tarfile.TarError, KeyError, IndexError, TypeError, AttributeError) as e:
        raise ValueError(f"Not an OCI image layout: {path}: {type(e).__name__}: {e}") from e


def _summarize(path: Path) -> ImageSummary:
    with tarfile.open(path, mode="r") as outer:
        index = json.loads(_read_member(outer, "index.json"))
        manifests = index.get("manifests") or []
        if len(manifests) != 1:
            raise ValueError(f"Expected one manifest in {path}, found {len(manifests)}")
        descriptor = manifests[0]

        def blob(digest: str) -> bytes:
            return _read_member(outer, "blobs/sha256/" + digest.split(":", 1)[1])

        manifest = json.loads(blob(descriptor["digest"]))
        config = json.loads(blob(manifest["config"]["digest"]))

        files: List[str] = []
        directories: List[str] = []
        executables: List[str] = []
        for layer_desc in manifest["layers"]:
            with tarfile.open(fileobj=io.BytesIO(blob(layer_desc["digest"])), mode="r") as layer:
                for member in layer.getmembers():
                    name = member.name.rstrip("/")
                    if member.isdir():
                        directories.append(name)
                    else:
                        files.append(name)
                        if member.isfile() and member.mode & 0o111:
                            executables.append(name)

    runtime = config.get("config") or {}
    annotations = descriptor.get("annotations") or {}
    return ImageSummary(
        architecture=config.get("architecture", ""),
        os=config.get("os", ""),
        variant=config.get("variant"),
        entrypoint=list(runtime.get("Entrypoint") or []),
        cmd=runtime.get("Cmd"),
        env=list(runtime.get("Env") or []),
        files=sorted(files),
        directories=sorted(directories),
        executables=sorted(executables),
        layer_count=len(manifest["layers"]),
        ref_names=[annotations[REF_NAME_ANNOTATION]] if REF_NAME_ANNOTATION in annotations else [],
    )
