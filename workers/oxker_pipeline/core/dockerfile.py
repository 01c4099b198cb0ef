"""
Recipe rendering — the container-native form of the same pipeline.

Emits the multi-stage builder Dockerfile and the target.sh it runs, both
generated from the profile's toolchain table so the docker build and the
Python pipeline cannot disagree about triples, linkers or flags.

target.sh writes the resolved triple to /.target and the cross host
package to /.compiler (empty for native builds), and registers the cross
linker in cargo's config only when TARGETARCH differs from BUILDARCH.
"""
import os
from pathlib import Path
from posixpath import dirname
from typing import Dict, Optional

from oxker_pipeline.core.target import COMPILER_STATE_FILE, TARGET_STATE_FILE
from oxker_pipeline.policy.profile import Profile, TargetArch

SCRIPT_PATH = "containerised/target.sh"


def render_target_script(profile: Optional[Profile] = None) -> str:
    """Shell resolver equivalent to core.target.resolve_target."""
    if profile is None:
        profile = Profile.v1()

    lines = [
        "#!/bin/sh",
        "# Generated by oxker_pipeline from the toolchain table. Do not edit by hand.",
        "set -e",
        "",
        f': > /{COMPILER_STATE_FILE}',
        'case "${TARGETARCH}" in',
    ]
    for arch in TargetArch:
        entry = profile.entry(arch)
        lines += [
            f"\t{arch.value})",
            f'\t\techo "{entry.target_triple}" > /{TARGET_STATE_FILE}',
            '\t\tif [ "${TARGETARCH}" != "${BUILDARCH}" ]; then',
            f'\t\t\techo "{entry.host_package}" > /{COMPILER_STATE_FILE}',
            '\t\t\tmkdir -p "${CARGO_HOME:-/usr/local/cargo}"',
            f'\t\t\tprintf \'[target.{entry.target_triple}]\\nlinker = "{entry.cross_linker}"\\n\' '
            '>> "${CARGO_HOME:-/usr/local/cargo}/config.toml"',
            "\t\tfi",
            "\t\t;;",
        ]
    lines += [
        "\t*)",
        '\t\techo "Unsupported TARGETARCH: ${TARGETARCH}" >&2',
        "\t\texit 1",
        "\t\t;;",
        "esac",
        "",
    ]
    return "\n".join(lines)


def render_builder_dockerfile(profile: Optional[Profile] = None, script_path: str = SCRIPT_PATH) -> str:
    """Multi-stage builder + scratch runtime Dockerfile."""
    if profile is None:
        profile = Profile.v1()

    name = profile.binary_name
    src = f"/usr/src/{name}"
    release = f"target/$(cat /{TARGET_STATE_FILE})/{profile.build_profile}"
    build_flag = "--release" if profile.build_profile == "release" else f"--profile {profile.build_profile}"
    env_name, env_value = profile.runtime_env
    app_dir = dirname(profile.image_entrypoint) + "/"

    rustflags = []
    for arch in TargetArch:
        entry = profile.entry(arch)
        key = entry.target_triple.upper().replace("-", "_")
        rustflags.append(f'ENV CARGO_TARGET_{key}_RUSTFLAGS="{" ".join(entry.rustflags)}"')

    return "\n".join([
        "#############",
        "## Builder ##",
        "#############",
        "",
        f"FROM --platform=$BUILDPLATFORM {profile.builder_image} AS builder",
        "",
        "ARG TARGETARCH",
        "ARG BUILDARCH",
        "",
        "# Static linking for every target",
        *rustflags,
        "",
        f"COPY ./{script_path} .",
        "",
        "RUN chmod +x ./target.sh && ./target.sh",
        "",
        f"RUN apt-get update && apt-get install $(cat /{COMPILER_STATE_FILE}) -y",
        "",
        "WORKDIR /usr/src",
        "",
        "# Placeholder crate, so dependencies are cached apart from the source",
        f"RUN cargo new {name}",
        "",
        f"COPY Cargo.* {src}/",
        "",
        f"WORKDIR {src}",
        "",
        f"RUN rustup target add $(cat /{TARGET_STATE_FILE})",
        "",
        f"RUN cargo build {build_flag} --target $(cat /{TARGET_STATE_FILE})",
        "",
        f"COPY src {src}/src/",
        "",
        "# Drop the placeholder's fingerprints so the entry unit is always rebuilt",
        f"RUN rm -rf {release}/.fingerprint/{name}-* {release}/deps/{name}-* {release}/{name}",
        "",
        f"RUN cargo build {build_flag} --target $(cat /{TARGET_STATE_FILE})",
        "",
        f"RUN cp {src}/{release}/{name} /",
        "",
        "#############",
        "## Runtime ##",
        "#############",
        "",
        "FROM scratch",
        "",
        "# Read by the application itself. DO NOT EDIT",
        f"ENV {env_name}={env_value}",
        "",
        f"COPY --from=builder /{name} {app_dir}",
        "",
        f'ENTRYPOINT [ "{profile.image_entrypoint}" ]',
        "",
    ])


def write_recipes(output_dir: Path, profile: Optional[Profile] = None) -> Dict[str, Path]:
    """Write Dockerfile and target.sh into *output_dir*."""
    output_dir.mkdir(parents=True, exist_ok=True)
    dockerfile = output_dir / "Dockerfile"
    script = output_dir / "target.sh"
    dockerfile.write_text(render_builder_dockerfile(profile))
    script.write_text(render_target_script(profile))
    os.chmod(script, 0o755)
    return {"Dockerfile": dockerfile, "target.sh": script}
