"""
Target resolver — requested platform → ToolchainSpec.

Responsibilities:
  - Normalize architecture names (docker TARGETARCH and uname -m spellings).
  - Look up the toolchain row for the requested architecture.
  - Select the cross linker and its host package only when the build host
    differs from the target.
  - Persist the resolved triple and host package as two state files
    (.target, .compiler) that later stages read without re-resolving.

Table lookup only; nothing here runs a command.
"""
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from oxker_pipeline.errors import UnsupportedTargetError
from oxker_pipeline.policy.profile import Profile, TargetArch

logger = logging.getLogger(__name__)

TARGET_STATE_FILE = ".target"
COMPILER_STATE_FILE = ".compiler"

_ARCH_ALIASES: Dict[str, TargetArch] = {
    "amd64": TargetArch.AMD64,
    "x86_64": TargetArch.AMD64,
    "x86-64": TargetArch.AMD64,
    "arm64": TargetArch.ARM64,
    "aarch64": TargetArch.ARM64,
    "arm64/v8": TargetArch.ARM64,
    "arm": TargetArch.ARM,
    "armhf": TargetArch.ARM,
    "armv7": TargetArch.ARM,
    "armv7l": TargetArch.ARM,
    "arm/v7": TargetArch.ARM,
}


@dataclass(frozen=True)
class BuildPlatform:
    """The (requested, host) pair supplied at pipeline start."""
    requested: TargetArch
    host: TargetArch

    @property
    def is_cross(self) -> bool:
        return self.requested != self.host


@dataclass(frozen=True)
class ToolchainSpec:
    """Resolved toolchain. Immutable; consumed read-only by later stages."""

    arch: TargetArch
    target_triple: str
    linker: Optional[str]          # None for native builds
    rustflags: Tuple[str, ...]
    host_package: Optional[str]    # None for native builds
    elf_machine: str
    cross: bool

    @property
    def cargo_triple_key(self) -> str:
        """Triple in the form cargo expects inside env var names."""
        return self.target_triple.upper().replace("-", "_")

    def cargo_env(self) -> Dict[str, str]:
        """Per-target cargo configuration, as environment variables."""
        key = self.cargo_triple_key
        env = {f"CARGO_TARGET_{key}_RUSTFLAGS": " ".join(self.rustflags)}
        if self.linker:
            env[f"CARGO_TARGET_{key}_LINKER"] = self.linker
        return env


def normalize_arch(name: Union[str, TargetArch]) -> TargetArch:
    """
    Map an architecture name onto a supported TargetArch.

    Raises
    ------
    UnsupportedTargetError
        If *name* is not a known spelling of a supported architecture.
    """
    if isinstance(name, TargetArch):
        return name
    key = (name or "").strip().lower()
    if key.startswith("linux/"):
        key = key[len("linux/"):]
    try:
        return _ARCH_ALIASES[key]
    except KeyError:
        supported = ", ".join(a.value for a in TargetArch)
        raise UnsupportedTargetError(
            f"Unsupported target architecture '{name}' (supported: {supported})",
            stage="resolve",
        ) from None


def detect_host_arch() -> TargetArch:
    """Architecture of the machine running the pipeline."""
    return normalize_arch(platform.machine())


def resolve_target(
    requested: Union[str, TargetArch],
    host: Union[str, TargetArch, None] = None,
    profile: Optional[Profile] = None,
) -> ToolchainSpec:
    """
    Resolve the toolchain for *requested* when building on *host*.

    Parameters
    ----------
    requested : str or TargetArch
        Target architecture.
    host : str or TargetArch, optional
        Build-host architecture. Detected when omitted.
    profile : Profile, optional
        Defaults to Profile.v1().

    Raises
    ------
    UnsupportedTargetError
        Before anything else happens, if either architecture is unknown.
    """
    if profile is None:
        profile = Profile.v1()

    target_arch = normalize_arch(requested)
    host_arch = detect_host_arch() if host is None else normalize_arch(host)
    entry = profile.entry(target_arch)
    build_platform = BuildPlatform(requested=target_arch, host=host_arch)

    spec = ToolchainSpec(
        arch=target_arch,
        target_triple=entry.target_triple,
        linker=entry.cross_linker if build_platform.is_cross else None,
        rustflags=tuple(entry.rustflags),
        host_package=entry.host_package if build_platform.is_cross else None,
        elf_machine=entry.elf_machine,
        cross=build_platform.is_cross,
    )
    logger.info(
        "Resolved %s on %s host → %s (%s)",
        target_arch.value,
        host_arch.value,
        spec.target_triple,
        "cross" if spec.cross else "native",
    )
    return spec


def write_resolution(spec: ToolchainSpec, state_dir: Path) -> Tuple[Path, Path]:
    """
    Write the resolved triple and host package to *state_dir*.

    The compiler file is written empty for native builds so that the
    install step can always read it.
    """
    state_dir.mkdir(parents=True, exist_ok=True)
    target_file = state_dir / TARGET_STATE_FILE
    compiler_file = state_dir / COMPILER_STATE_FILE
    target_file.write_text(spec.target_triple + "\n")
    compiler_file.write_text((spec.host_package or "") + "\n")
    return target_file, compiler_file


def read_resolution(state_dir: Path) -> Tuple[str, Optional[str]]:
    """Return (target_triple, host_package_or_None) from *state_dir*."""
    triple = (state_dir / TARGET_STATE_FILE).read_text().strip()
    package = (state_dir / COMPILER_STATE_FILE).read_text().strip()
    if not triple:
        raise ValueError(f"Empty target state in {state_dir}")
    return triple, package or None
