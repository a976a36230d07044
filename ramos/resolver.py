"""
Shared library dependency closure of a binary, as reported by the dynamic loader.
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, Tuple

from .console import run_command

_ARROW = re.compile(r"^\s*(\S+)\s+=>\s+(\S+)")
_LOADER = re.compile(r"^\s*(/\S+)")


@dataclass(frozen=True)
class ResolvedLibraries:
    binary: str
    libraries: FrozenSet[str]
    missing: Tuple[str, ...] = ()
    static: bool = False


def parse_ldd_output(text):
    """Split ldd output into (absolute library paths, unresolved sonames).

    ``linux-vdso.so.1`` style entries have no file behind them and are dropped.
    """
    libraries = set()
    missing = []
    for line in text.splitlines():
        match = _ARROW.match(line)
        if match:
            soname, target = match.groups()
            if target == "not":
                missing.append(soname)
            elif target.startswith("/"):
                libraries.add(target)
            continue
        match = _LOADER.match(line)
        if match:
            libraries.add(match.group(1))
    return frozenset(libraries), tuple(missing)


def resolve_libraries(binary, runner=run_command):
    """Return the libraries ``binary`` needs at the paths the loader would use.

    Pure and idempotent; unresolved libraries are reported in ``missing`` rather
    than raised, since a partially resolvable binary may still be usable.
    """
    result = runner(["ldd", binary])
    output = (result.stdout or "") + (result.stderr or "")
    if "not a dynamic executable" in output or "statically linked" in output:
        return ResolvedLibraries(binary, frozenset(), static=True)
    if result.returncode != 0 and "=>" not in output:
        return ResolvedLibraries(binary, frozenset(), missing=("<ldd failed>",))
    libraries, missing = parse_ldd_output(result.stdout or "")
    return ResolvedLibraries(binary, libraries, missing)
