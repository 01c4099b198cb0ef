"""
Dependency manifest and source identity.

The manifest hash covers Cargo.toml and Cargo.lock and nothing else, so it
changes when dependencies change and never when only application source
does. The source snapshot hash is its complement: it covers src/ only.
"""
import hashlib
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

MANIFEST_FILE = "Cargo.toml"
LOCK_FILE = "Cargo.lock"
SOURCE_DIR = "src"
ENTRY_UNIT = "src/main.rs"


@dataclass(frozen=True)
class DependencyManifest:
    """Declared dependencies of the crate being built."""
    package_name: str
    package_version: str
    dependencies: Tuple[Tuple[str, str], ...]   # (name, version requirement)
    manifest_sha256: str
    has_lockfile: bool

    @property
    def crate_name(self) -> str:
        """Name cargo uses for the crate's compilation outputs."""
        return self.package_name.replace("-", "_")

    def manifest_files(self) -> List[str]:
        files = [MANIFEST_FILE]
        if self.has_lockfile:
            files.append(LOCK_FILE)
        return files


@dataclass(frozen=True)
class SourceSnapshot:
    """Identity of the application source tree."""
    files: Tuple[str, ...]
    snapshot_sha256: str


def _dependency_version(spec) -> str:
    if isinstance(spec, str):
        return spec
    if isinstance(spec, dict):
        if "version" in spec:
            return str(spec["version"])
        if "git" in spec:
            return f"git+{spec['git']}"
        if "path" in spec:
            return f"path+{spec['path']}"
        if spec.get("workspace"):
            return "workspace"
    return "*"


def load_manifest(project_dir: Path) -> DependencyManifest:
    """
    Read the dependency manifest of the crate at *project_dir*.

    Raises
    ------
    FileNotFoundError
        If Cargo.toml is missing.
    ValueError
        If Cargo.toml is not valid TOML or has no [package] name.
    """
    manifest_path = project_dir / MANIFEST_FILE
    if not manifest_path.exists():
        raise FileNotFoundError(f"Manifest not found: {manifest_path}")

    manifest_bytes = manifest_path.read_bytes()
    try:
        data = tomllib.loads(manifest_bytes.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid {MANIFEST_FILE}: {e}") from e

    package = data.get("package") or {}
    name = package.get("name")
    if not name:
        raise ValueError(f"{MANIFEST_FILE} has no [package] name")

    deps: Dict[str, str] = {}
    for table in ("dependencies", "build-dependencies"):
        for dep_name, spec in (data.get(table) or {}).items():
            deps[dep_name] = _dependency_version(spec)

    lock_path = project_dir / LOCK_FILE
    has_lock = lock_path.exists()

    h = hashlib.sha256()
    h.update(MANIFEST_FILE.encode("utf-8") + b"\0")
    h.update(manifest_bytes)
    if has_lock:
        h.update(LOCK_FILE.encode("utf-8") + b"\0")
        h.update(lock_path.read_bytes())

    return DependencyManifest(
        package_name=name,
        package_version=str(package.get("version", "0.0.0")),
        dependencies=tuple(sorted(deps.items())),
        manifest_sha256=h.hexdigest(),
        has_lockfile=has_lock,
    )


def snapshot_source(project_dir: Path) -> SourceSnapshot:
    """
    Hash every file under src/ deterministically.
    Sort by relative path, then hash (path + content) for each.
    """
    src_dir = project_dir / SOURCE_DIR
    if not src_dir.is_dir():
        raise FileNotFoundError(f"Source directory not found: {src_dir}")

    h = hashlib.sha256()
    rel_paths: List[str] = []
    for fpath in sorted(src_dir.rglob("*")):
        if not fpath.is_file():
            continue
        rel = fpath.relative_to(project_dir).as_posix()
        rel_paths.append(rel)
        h.update(rel.encode("utf-8") + b"\0")
        h.update(fpath.read_bytes())
    return SourceSnapshot(files=tuple(rel_paths), snapshot_sha256=h.hexdigest())
