"""
Command-line entry point.

    python -m oxker_pipeline targets
    python -m oxker_pipeline resolve arm64 --host amd64
    python -m oxker_pipeline run arm64 /path/to/oxker
    python -m oxker_pipeline inspect /files/artifacts/aarch64-unknown-linux-musl/image.tar
    python -m oxker_pipeline render containerised/

Exit status is 0 on success, otherwise the failing error's exit code.
Tool diagnostics are passed through to stderr unmodified.
"""
import argparse
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from oxker_pipeline import __version__
from oxker_pipeline.config import PipelineSettings
from oxker_pipeline.core.dockerfile import write_recipes
from oxker_pipeline.core.image import inspect_image
from oxker_pipeline.core.target import resolve_target, write_resolution
from oxker_pipeline.errors import PipelineError
from oxker_pipeline.policy.profile import Profile, TargetArch
from oxker_pipeline.runner import run_pipeline

logger = logging.getLogger("oxker_pipeline")


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def cmd_targets(args, settings: PipelineSettings) -> int:
    profile = Profile.v1()
    rows = {}
    for arch in TargetArch:
        entry = profile.entry(arch)
        rows[arch.value] = {
            "target_triple": entry.target_triple,
            "cross_linker": entry.cross_linker,
            "host_package": entry.host_package,
            "rustflags": " ".join(entry.rustflags),
        }
    _print_json(rows)
    return 0


def cmd_resolve(args, settings: PipelineSettings) -> int:
    spec = resolve_target(args.arch, args.host)
    if args.state_dir:
        write_resolution(spec, Path(args.state_dir))
    payload = dataclasses.asdict(spec)
    payload["arch"] = spec.arch.value
    payload["cargo_env"] = spec.cargo_env()
    _print_json(payload)
    return 0


def cmd_run(args, settings: PipelineSettings) -> int:
    if args.install_host_packages:
        settings.INSTALL_HOST_PACKAGES = True
    if args.keep_workspace:
        settings.KEEP_WORKSPACE = True
    receipt = run_pipeline(
        args.arch,
        Path(args.project_dir),
        host=args.host,
        settings=settings,
        ref_name=args.ref_name,
    )
    print(f"artifact: {receipt.artifact.path} ({receipt.artifact.sha256})")
    print(f"image:    {receipt.image.path} ({receipt.image.manifest_digest})")
    return 0


def cmd_inspect(args, settings: PipelineSettings) -> int:
    summary = inspect_image(Path(args.image))
    _print_json(dataclasses.asdict(summary))
    return 0


def cmd_render(args, settings: PipelineSettings) -> int:
    written = write_recipes(Path(args.output_dir))
    for path in written.values():
        print(path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oxker-pipeline",
        description="Cross-architecture build-and-package pipeline for oxker",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("targets", help="List supported architectures")
    p.set_defaults(func=cmd_targets)

    p = sub.add_parser("resolve", help="Resolve the toolchain for an architecture")
    p.add_argument("arch", help="Target architecture (amd64, arm64, arm)")
    p.add_argument("--host", default=None, help="Build-host architecture (default: detected)")
    p.add_argument("--state-dir", default=None, help="Write .target/.compiler here")
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("run", help="Run the full pipeline")
    p.add_argument("arch", help="Target architecture (amd64, arm64, arm)")
    p.add_argument("project_dir", help="Crate root (Cargo.toml, src/)")
    p.add_argument("--host", default=None, help="Build-host architecture (default: detected)")
    p.add_argument("--ref-name", default=None, help="Image reference annotation, e.g. oxker:local")
    p.add_argument("--install-host-packages", action="store_true", help="apt-get install the cross linker")
    p.add_argument("--keep-workspace", action="store_true", help="Keep the per-run workspace")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("inspect", help="Summarize an image tarball")
    p.add_argument("image", help="Path to image.tar")
    p.set_defaults(func=cmd_inspect)

    p = sub.add_parser("render", help="Write the Dockerfile and target.sh recipes")
    p.add_argument("output_dir", help="Directory to write into")
    p.set_defaults(func=cmd_render)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = PipelineSettings()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.LOG_LEVEL.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    try:
        return args.func(args, settings)
    except PipelineError as e:
        print(f"error: {e}", file=sys.stderr)
        if e.diagnostics:
            sys.stderr.write(e.diagnostics)
            if not e.diagnostics.endswith("\n"):
                sys.stderr.write("\n")
        return e.exit_code
    except (FileNotFoundError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
