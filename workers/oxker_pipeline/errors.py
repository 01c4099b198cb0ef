"""
Errors — the pipeline's failure taxonomy.

Every failure is fatal: the first one aborts the run, no stage retries,
and nothing partial is published. Each class carries the process exit
code the CLI reports and, where a tool produced any, the tool's own
diagnostics unmodified.
"""
from typing import Optional


class PipelineError(RuntimeError):
    """Base class for all pipeline failures."""

    exit_code = 1

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        diagnostics: str = "",
    ):
        super().__init__(message)
        self.stage = stage
        self.diagnostics = diagnostics


class UnsupportedTargetError(PipelineError, ValueError):
    """Requested architecture has no entry in the toolchain table."""

    exit_code = 2


class DependencyResolutionError(PipelineError):
    """Toolchain preparation or dependency compilation failed."""

    exit_code = 3


class CompilationError(PipelineError):
    """The application build failed."""

    exit_code = 4


class AssemblyError(PipelineError):
    """The runtime image could not be assembled from the artifact."""

    exit_code = 5
