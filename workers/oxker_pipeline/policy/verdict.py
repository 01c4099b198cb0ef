"""
Verdict — ACCEPT / REJECT gate for the artifact before assembly.

The runtime image is only as good as the binary it carries: anything
other than a static executable for the resolved architecture would
produce an image that cannot start. Policy never imports core/ stages,
only the facts they produce.
"""
from enum import Enum, unique
from typing import List, Tuple

from oxker_pipeline.core.elf_check import ArtifactElf
from oxker_pipeline.core.target import ToolchainSpec


@unique
class Verdict(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


@unique
class ArtifactRejectReason(str, Enum):
    NOT_ELF = "NOT_ELF"
    MACHINE_MISMATCH = "MACHINE_MISMATCH"
    DYNAMIC_INTERPRETER = "DYNAMIC_INTERPRETER"
    SHARED_LIBRARY_DEPENDENCIES = "SHARED_LIBRARY_DEPENDENCIES"
    NOT_EXECUTABLE = "NOT_EXECUTABLE"


_EXECUTABLE_TYPES = ("ET_EXEC", "ET_DYN")


def gate_artifact(meta: ArtifactElf, spec: ToolchainSpec) -> Tuple[Verdict, List[str]]:
    """
    Evaluate the artifact against the resolved toolchain.

    Returns (Verdict, list_of_reason_strings).
    Any single reject reason → REJECT.
    """
    if not meta.is_elf:
        return Verdict.REJECT, [ArtifactRejectReason.NOT_ELF.value]

    reasons: List[str] = []

    if meta.machine != spec.elf_machine:
        reasons.append(ArtifactRejectReason.MACHINE_MISMATCH.value)

    if meta.elf_type not in _EXECUTABLE_TYPES:
        reasons.append(ArtifactRejectReason.NOT_EXECUTABLE.value)

    if meta.interpreter is not None:
        reasons.append(ArtifactRejectReason.DYNAMIC_INTERPRETER.value)

    if meta.needed:
        reasons.append(ArtifactRejectReason.SHARED_LIBRARY_DEPENDENCIES.value)

    if reasons:
        return Verdict.REJECT, reasons
    return Verdict.ACCEPT, []
