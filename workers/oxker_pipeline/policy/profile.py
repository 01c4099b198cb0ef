"""
Profile — the fixed toolchain table and packaging constants.

The profile holds every per-architecture decision so that the stages
contain no opinions. Adding an architecture is a profile change, not a
code change. The table is validated exhaustively when the profile is
constructed, so a bad entry fails at startup instead of mid-build.
"""
from dataclasses import dataclass, field
from enum import Enum, unique
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from oxker_pipeline import PROFILE_ID, RUNTIME_ENV_NAME, RUNTIME_ENV_VALUE


STATIC_LINK_FLAG = "+crt-static"


@unique
class TargetArch(str, Enum):
    """Supported architectures, spelled the way docker's TARGETARCH is."""
    AMD64 = "amd64"
    ARM64 = "arm64"
    ARM = "arm"


@dataclass(frozen=True)
class TargetEntry:
    """One row of the toolchain table."""

    arch: TargetArch
    target_triple: str
    cross_linker: str          # only used when host != target
    host_package: str          # apt package providing cross_linker
    rustflags: Tuple[str, ...]

    # Facts used to check the finished artifact and label the image
    elf_machine: str
    oci_architecture: str
    oci_variant: Optional[str] = None


@dataclass(frozen=True)
class Profile:
    """Describes what the pipeline builds and how it packages it."""

    profile_id: str
    binary_name: str
    build_profile: str
    targets: Mapping[TargetArch, TargetEntry]

    # Runtime image
    image_entrypoint: str = "/app/oxker"
    runtime_env: Tuple[str, str] = (RUNTIME_ENV_NAME, RUNTIME_ENV_VALUE)

    # Builder stage base image for rendered recipes
    builder_image: str = "rust:slim"

    placeholder_main: str = field(default="fn main() {}\n")

    def __post_init__(self):
        validate_table(self.targets)

    def entry(self, arch: TargetArch) -> TargetEntry:
        return self.targets[arch]

    @classmethod
    def v1(cls) -> "Profile":
        """The locked v1 profile: static musl release builds for three arches."""
        table = {
            TargetArch.AMD64: TargetEntry(
                arch=TargetArch.AMD64,
                target_triple="x86_64-unknown-linux-musl",
                cross_linker="x86_64-linux-gnu-gcc",
                host_package="gcc-x86-64-linux-gnu",
                rustflags=("-C", "target-feature=+crt-static"),
                elf_machine="EM_X86_64",
                oci_architecture="amd64",
            ),
            TargetArch.ARM64: TargetEntry(
                arch=TargetArch.ARM64,
                target_triple="aarch64-unknown-linux-musl",
                cross_linker="aarch64-linux-gnu-gcc",
                host_package="gcc-aarch64-linux-gnu",
                rustflags=("-C", "target-feature=+crt-static", "-C", "link-arg=-lgcc"),
                elf_machine="EM_AARCH64",
                oci_architecture="arm64",
            ),
            TargetArch.ARM: TargetEntry(
                arch=TargetArch.ARM,
                target_triple="arm-unknown-linux-musleabihf",
                cross_linker="arm-linux-gnueabihf-ld",
                host_package="gcc-arm-linux-gnueabihf",
                rustflags=("-C", "target-feature=+crt-static"),
                elf_machine="EM_ARM",
                oci_architecture="arm",
                oci_variant="v7",
            ),
        }
        return cls(
            profile_id=PROFILE_ID,
            binary_name="oxker",
            build_profile="release",
            targets=MappingProxyType(table),
        )


def validate_table(targets: Mapping[TargetArch, TargetEntry]) -> None:
    """
    Check the toolchain table covers every architecture exactly once.

    Raises
    ------
    ValueError
        On a missing or mislabelled row, a duplicated triple, or a row
        whose rustflags do not force static linking.
    """
    missing = [a.value for a in TargetArch if a not in targets]
    if missing:
        raise ValueError(f"Toolchain table missing architectures: {missing}")

    seen_triples = set()
    for arch, entry in targets.items():
        if entry.arch != arch:
            raise ValueError(f"Toolchain row for {arch.value} is labelled {entry.arch.value}")
        if not entry.target_triple:
            raise ValueError(f"Empty target triple for {arch.value}")
        if entry.target_triple in seen_triples:
            raise ValueError(f"Duplicate target triple: {entry.target_triple}")
        seen_triples.add(entry.target_triple)
        if not any(STATIC_LINK_FLAG in flag for flag in entry.rustflags):
            raise ValueError(f"Rustflags for {arch.value} do not force static linking")
