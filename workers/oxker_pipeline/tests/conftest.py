"""
Shared pytest fixtures for oxker_pipeline tests.

No Rust toolchain is needed. FakeToolchain stands in for cargo, rustup
and apt-get behind the same runner signature the stages use, and writes
synthetic ELF binaries whose bytes depend on the source they were "built"
from. Like real cargo it skips recompiling the crate while its
fingerprint directory exists, so a missing invalidation shows up as a
stale artifact.
"""
import hashlib
import struct
import textwrap
import tomllib
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import pytest

from oxker_pipeline.config import PipelineSettings
from oxker_pipeline.core.command import CommandResult

# e_machine values
EM_ARM = 40
EM_X86_64 = 62
EM_AARCH64 = 183

ET_EXEC = 2
PT_INTERP = 3
SHT_STRTAB = 3

TRIPLE_MACHINES = {
    "x86_64-unknown-linux-musl": (EM_X86_64, 64),
    "aarch64-unknown-linux-musl": (EM_AARCH64, 64),
    "arm-unknown-linux-musleabihf": (EM_ARM, 32),
}

CARGO_TOML = textwrap.dedent("""\
    [package]
    name = "oxker"
    version = "0.6.4"
    edition = "2021"

    [dependencies]
    bollard = "0.16"
    crossterm = "0.27"
    tokio = { version = "1.36", features = ["full"] }
""")

CARGO_LOCK = textwrap.dedent("""\
    version = 3

    [[package]]
    name = "bollard"
    version = "0.16.0"
""")

MAIN_RS = textwrap.dedent("""\
    fn main() {
        println!("oxker");
    }
""")


# =============================================================================
# Synthetic ELF
# =============================================================================

def elf_bytes(
    machine: int = EM_X86_64,
    elfclass: int = 64,
    interp: Optional[str] = None,
    e_type: int = ET_EXEC,
) -> bytes:
    """
    Minimal well-formed little-endian ELF: header, optional PT_INTERP,
    a null section and .shstrtab.
    """
    is64 = elfclass == 64
    ehsize = 64 if is64 else 52
    phentsize = 56 if is64 else 32
    shentsize = 64 if is64 else 40

    phnum = 1 if interp else 0
    phoff = ehsize if interp else 0
    interp_data = (interp.encode() + b"\0") if interp else b""
    interp_off = ehsize + phnum * phentsize
    shstrtab = b"\0.shstrtab\0"
    shstrtab_off = interp_off + len(interp_data)
    shoff = shstrtab_off + len(shstrtab)
    shoff += (-shoff) % 8

    ident = b"\x7fELF" + bytes([2 if is64 else 1, 1, 1, 0]) + b"\0" * 8
    if is64:
        header = struct.pack(
            "<HHIQQQIHHHHHH",
            e_type, machine, 1, 0x401000, phoff, shoff, 0,
            ehsize, phentsize, phnum, shentsize, 2, 1,
        )
    else:
        header = struct.pack(
            "<HHIIIIIHHHHHH",
            e_type, machine, 1, 0x10000, phoff, shoff, 0x5000400,
            ehsize, phentsize, phnum, shentsize, 2, 1,
        )

    phdrs = b""
    if interp:
        size = len(interp_data)
        if is64:
            phdrs = struct.pack("<IIQQQQQQ", PT_INTERP, 4, interp_off, 0, 0, size, size, 1)
        else:
            phdrs = struct.pack("<IIIIIIII", PT_INTERP, interp_off, 0, 0, size, size, 4, 1)

    body = ident + header + phdrs + interp_data + shstrtab
    body += b"\0" * (shoff - len(body))

    if is64:
        null_sh = struct.pack("<IIQQQQIIQQ", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)
        str_sh = struct.pack("<IIQQQQIIQQ", 1, SHT_STRTAB, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0)
    else:
        null_sh = struct.pack("<IIIIIIIIII", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)
        str_sh = struct.pack("<IIIIIIIIII", 1, SHT_STRTAB, 0, 0, shstrtab_off, len(shstrtab), 0, 0, 1, 0)
    return body + null_sh + str_sh


def make_elf(path: Path, **kwargs) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(elf_bytes(**kwargs))
    return path


# =============================================================================
# Fake toolchain
# =============================================================================

class FakeToolchain:
    """
    Runner double for cargo / rustup / apt-get.

    ``cargo build`` reads Cargo.toml in cwd, writes one rlib per declared
    dependency not already present in CARGO_TARGET_DIR, and builds the
    crate unless its fingerprint survives from an earlier build.

    Attributes
    ----------
    calls : list of argv lists, in order
    compiled : list of (kind, name) for every unit actually compiled
    """

    def __init__(
        self,
        fail_on: Optional[Callable[[List[str], Optional[Path]], bool]] = None,
        fail_stderr: str = "error[E0425]: cannot find value `x` in this scope\n",
        interp: Optional[str] = None,
        skip_binary: bool = False,
    ):
        self.fail_on = fail_on
        self.fail_stderr = fail_stderr
        self.interp = interp
        self.skip_binary = skip_binary
        self.calls: List[List[str]] = []
        self.envs: List[dict] = []
        self.compiled: List[Tuple[str, str]] = []

    def __call__(self, argv, cwd=None, env=None, timeout=1800) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env or {}))
        if self.fail_on is not None and self.fail_on(argv, cwd):
            return CommandResult(argv=argv, exit_code=101, stderr=self.fail_stderr)
        if len(argv) > 1 and argv[1] == "build":
            return self._cargo_build(argv, Path(cwd), env or {})
        return CommandResult(argv=argv, exit_code=0, stdout="ok\n")

    def tool_calls(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if Path(c[0]).name == tool]

    def _cargo_build(self, argv, cwd: Path, env: dict) -> CommandResult:
        triple = argv[argv.index("--target") + 1]
        profile_dir = Path(env["CARGO_TARGET_DIR"]) / triple / "release"
        deps_dir = profile_dir / "deps"
        fp_dir = profile_dir / ".fingerprint"
        deps_dir.mkdir(parents=True, exist_ok=True)
        fp_dir.mkdir(parents=True, exist_ok=True)

        manifest = tomllib.loads((cwd / "Cargo.toml").read_text())
        for dep in sorted(manifest.get("dependencies", {})):
            rlib = deps_dir / f"lib{dep}-fake.rlib"
            if not rlib.exists():
                rlib.write_bytes(f"{dep}:{triple}".encode())
                (fp_dir / f"{dep}-fake").mkdir(exist_ok=True)
                self.compiled.append(("dep", dep))

        name = manifest["package"]["name"]
        crate = name.replace("-", "_")
        crate_fp = fp_dir / f"{crate}-fake"
        if crate_fp.exists():
            return CommandResult(argv=argv, exit_code=0, stderr="    Finished release\n")

        source = (cwd / "src" / "main.rs").read_bytes()
        crate_fp.mkdir()
        (crate_fp / "bin-oxker").write_text(hashlib.sha256(source).hexdigest())
        (deps_dir / f"{crate}-fake").write_bytes(source)
        self.compiled.append(("crate", name))

        if not self.skip_binary:
            machine, elfclass = TRIPLE_MACHINES[triple]
            binary = elf_bytes(machine=machine, elfclass=elfclass, interp=self.interp)
            (profile_dir / name).write_bytes(binary + hashlib.sha256(source).digest())
        return CommandResult(argv=argv, exit_code=0, stderr=f"   Compiling {name}\n    Finished release\n")


def fake_which(name: str) -> Optional[str]:
    return f"/usr/bin/{name}"


def missing_which(name: str) -> Optional[str]:
    return None


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def crate_dir(tmp_path):
    """A minimal oxker-like crate: Cargo.toml, Cargo.lock, src/main.rs."""
    root = tmp_path / "oxker"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text(CARGO_TOML)
    (root / "Cargo.lock").write_text(CARGO_LOCK)
    (root / "src" / "main.rs").write_text(MAIN_RS)
    return root


@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(
        WORKSPACE_ROOT=tmp_path / "runs",
        CACHE_ROOT=tmp_path / "cache",
        ARTIFACTS_PATH=tmp_path / "artifacts",
    )


@pytest.fixture
def logs_dir(tmp_path):
    return tmp_path / "logs"


def tree_digest(root: Path) -> str:
    """Hash of every path and file content under *root*."""
    h = hashlib.sha256()
    for path in sorted(root.rglob("*")):
        h.update(path.relative_to(root).as_posix().encode() + b"\0")
        if path.is_file():
            h.update(path.read_bytes())
    return h.hexdigest()
