"""
ELF check — read the facts the runtime image depends on.

The runtime image has no libc, no dynamic loader and no shell, so the
artifact must be a self-contained executable for the image's
architecture. This module only reads; policy/verdict.py decides.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile


@dataclass(frozen=True)
class ArtifactElf:
    """Structural facts about a compiled artifact."""

    path: str
    is_elf: bool
    machine: Optional[str] = None      # e.g. "EM_AARCH64"
    elf_class: Optional[int] = None    # 32 or 64
    elf_type: Optional[str] = None     # "ET_EXEC" or "ET_DYN" (static-pie)
    interpreter: Optional[str] = None  # PT_INTERP, absent when static
    needed: List[str] = field(default_factory=list)  # DT_NEEDED entries
    build_id: Optional[str] = None

    @property
    def is_static(self) -> bool:
        return self.is_elf and self.interpreter is None and not self.needed


def _read_build_id(elffile: ELFFile) -> Optional[str]:
    section = elffile.get_section_by_name(".note.gnu.build-id")
    if section is None:
        return None
    for note in section.iter_notes():
        if note["n_type"] == "NT_GNU_BUILD_ID":
            return note["n_desc"]
    return None


def read_artifact(path: Path) -> ArtifactElf:
    """
    Open *path* as an ELF file and collect linkage facts.

    A file that is not ELF yields ``is_elf=False`` instead of raising.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    """
    if not path.exists():
        raise FileNotFoundError(f"Artifact not found: {path}")

    with open(path, "rb") as f:
        try:
            elffile = ELFFile(f)
        except ELFError:
            return ArtifactElf(path=str(path), is_elf=False)

        interpreter = None
        for segment in elffile.iter_segments():
            if segment["p_type"] == "PT_INTERP":
                interpreter = segment.get_interp_name()

        needed: List[str] = []
        for section in elffile.iter_sections():
            if isinstance(section, DynamicSection):
                for tag in section.iter_tags():
                    if tag.entry.d_tag == "DT_NEEDED":
                        needed.append(tag.needed)

        return ArtifactElf(
            path=str(path),
            is_elf=True,
            machine=elffile.header["e_machine"],
            elf_class=elffile.elfclass,
            elf_type=elffile.header["e_type"],
            interpreter=interpreter,
            needed=needed,
            build_id=_read_build_id(elffile),
        )
