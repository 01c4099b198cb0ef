"""
Toolchain preparation — make the resolved toolchain usable on this host.

Installs the cross host package (when enabled), adds the rustup target,
and confirms the cross linker is on PATH. Runs before any compilation so
a missing toolchain fails cheaply instead of halfway through a build.
"""
import logging
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from oxker_pipeline.config import PipelineSettings
from oxker_pipeline.core.command import CommandResult, CommandRunner, run_command, write_logs
from oxker_pipeline.core.target import ToolchainSpec
from oxker_pipeline.errors import DependencyResolutionError

logger = logging.getLogger(__name__)

STAGE = "toolchain"


def _check(result: CommandResult, what: str) -> None:
    if not result.ok:
        raise DependencyResolutionError(
            f"{what} failed with exit code {result.exit_code}",
            stage=STAGE,
            diagnostics=result.stderr,
        )


def prepare_toolchain(
    spec: ToolchainSpec,
    settings: PipelineSettings,
    logs_dir: Path,
    runner: CommandRunner = run_command,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> List[CommandResult]:
    """
    Prepare the host to build for *spec*.

    Returns the commands that were run, in order.

    Raises
    ------
    DependencyResolutionError
        If a command fails or the cross linker cannot be found.
    """
    results: List[CommandResult] = []

    if spec.host_package and settings.INSTALL_HOST_PACKAGES:
        logger.info(f"Installing host package {spec.host_package}")
        update = runner(
            [settings.APT_GET_BIN, "update"],
            timeout=settings.BUILD_TIMEOUT,
        )
        results.append(write_logs(update, logs_dir, "toolchain.apt-update"))
        _check(update, "apt-get update")

        install = runner(
            [settings.APT_GET_BIN, "install", "-y", spec.host_package],
            timeout=settings.BUILD_TIMEOUT,
        )
        results.append(write_logs(install, logs_dir, "toolchain.apt-install"))
        _check(install, f"Installing {spec.host_package}")

    add_target = runner(
        [settings.RUSTUP_BIN, "target", "add", spec.target_triple],
        timeout=settings.BUILD_TIMEOUT,
    )
    results.append(write_logs(add_target, logs_dir, "toolchain.rustup-target"))
    _check(add_target, f"rustup target add {spec.target_triple}")

    if spec.linker and which(spec.linker) is None:
        hint = f" (install {spec.host_package})" if spec.host_package else ""
        raise DependencyResolutionError(
            f"Cross linker '{spec.linker}' not found on PATH{hint}",
            stage=STAGE,
        )

    return results
