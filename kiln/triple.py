"""Platform triples.

A triple names a platform as ``<arch>-<vendor>-<os>[-<env>]``:

    x86_64-unknown-linux-gnu
    aarch64-apple-darwin
    x86_64-pc-windows-msvc

The orchestrator never interprets triples beyond what it needs to lay out
files and launch programs: executable suffix and the name of the dynamic
library search path variable.
"""

import platform

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86-64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
    "i686": "i686",
    "i386": "i686",
    "armv7l": "armv7",
}


def validate(triple: str) -> str:
    parts = triple.split("-")
    if len(parts) < 2 or not all(parts):
        raise ValueError(f"malformed platform triple: {triple!r}")
    return triple


def is_windows(triple: str) -> bool:
    return "windows" in triple


def is_darwin(triple: str) -> bool:
    return "darwin" in triple or "apple" in triple


def exe(name: str, triple: str) -> str:
    """Executable file name for ``name`` on ``triple``."""
    return f"{name}.exe" if is_windows(triple) else name


def dylib_path_var(triple: str) -> str:
    """Environment variable the dynamic loader searches on ``triple``."""
    if is_windows(triple):
        return "PATH"
    if is_darwin(triple):
        return "DYLD_LIBRARY_PATH"
    return "LD_LIBRARY_PATH"


def default_build_triple() -> str:
    """Best guess at the triple of the machine running the orchestrator."""
    machine = platform.machine().lower()
    arch = _ARCH_ALIASES.get(machine, machine or "x86_64")
    system = platform.system().lower()
    if system == "linux":
        return f"{arch}-unknown-linux-gnu"
    if system == "darwin":
        return f"{arch}-apple-darwin"
    if system == "windows":
        return f"{arch}-pc-windows-msvc"
    if system == "freebsd":
        return f"{arch}-unknown-freebsd"
    return f"{arch}-unknown-{system or 'none'}"
