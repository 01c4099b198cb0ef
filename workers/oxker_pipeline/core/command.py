"""
Command execution — run one external tool and capture its output.

Every stage goes through ``run_command`` (or a drop-in with the same
signature), so tests can substitute the Rust toolchain without touching
stage logic.
"""
import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a single command."""
    argv: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    stdout_path: Optional[Path] = field(default=None, compare=False)
    stderr_path: Optional[Path] = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)


CommandRunner = Callable[..., CommandResult]


def run_command(
    argv: List[str],
    cwd: Optional[Path] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: int = 1800,
) -> CommandResult:
    """
    Execute *argv* and return its CommandResult.

    *env* is layered over the current environment. A timeout or a missing
    executable is reported as exit code -1 with the reason in stderr.
    """
    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    logger.debug(f"$ {' '.join(argv)} (cwd={cwd})")
    t0 = time.monotonic()
    try:
        result = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        exit_code = result.returncode
        stdout = result.stdout
        stderr = result.stderr
    except subprocess.TimeoutExpired:
        exit_code = -1
        stdout = ""
        stderr = f"TIMEOUT after {timeout}s"
    except OSError as e:
        exit_code = -1
        stdout = ""
        stderr = str(e)
    duration = int((time.monotonic() - t0) * 1000)

    return CommandResult(
        argv=list(argv),
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=duration,
    )


def write_logs(result: CommandResult, logs_dir: Path, name: str) -> CommandResult:
    """
    Persist stdout/stderr of *result* under *logs_dir* as <name>.stdout/.stderr.

    Only streams with content are written.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    if result.stdout:
        result.stdout_path = logs_dir / f"{name}.stdout"
        result.stdout_path.write_text(result.stdout)
    if result.stderr:
        result.stderr_path = logs_dir / f"{name}.stderr"
        result.stderr_path.write_text(result.stderr)
    return result
