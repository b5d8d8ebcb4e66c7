"""Directory-change pseudo-command: grammar, resolution, native form.

``cd`` is never forwarded to a local shell as typed. The router resolves
the target itself, records it on the session and then writes the
equivalent native instruction into the running shell.
"""

from __future__ import annotations

import os
import re
import shlex
from typing import List, Optional


CD_PATTERN = re.compile(r"^cd(?:\s+(?P<arg>.*))?$", re.IGNORECASE | re.DOTALL)

WELL_KNOWN_FOLDERS = {
    "desktop": "Desktop",
    "documents": "Documents",
    "downloads": "Downloads",
}


def parse_cd(command: str) -> Optional[str]:
    """Return the cd argument, or None when ``command`` is not a cd.

    One leading and one trailing quote character are stripped, so
    ``cd "My Files"`` yields ``My Files``. Bare ``cd`` yields "".
    """
    match = CD_PATTERN.match(command.strip())
    if match is None:
        return None
    arg = (match.group("arg") or "").strip()
    if arg[:1] in ("'", '"'):
        arg = arg[1:]
    if arg[-1:] in ("'", '"'):
        arg = arg[:-1]
    return arg


def fallback_locations(arg: str, cwd: str, home: str) -> List[str]:
    """Places tried, in order, when ``cwd/arg`` does not exist."""
    drive = os.path.splitdrive(cwd)[0]
    root = drive + os.sep
    return [
        os.path.join(home, arg),
        os.path.join(home, "Desktop", arg),
        os.path.join(home, "Documents", arg),
        os.path.join(root, arg),
    ]


def resolve_directory(arg: str, cwd: str, home: Optional[str] = None) -> str:
    """Resolve a cd argument to a normalized path.

    Precedence: empty -> home; desktop/documents/downloads (any case) ->
    well-known folder; ``~`` -> home; ``..`` -> parent of cwd; absolute ->
    as is; relative -> ``cwd/arg`` if it exists, else the first existing
    fallback location, else ``cwd/arg`` unresolved.

    The result is not guaranteed to exist; callers check.
    """
    home = home or os.path.expanduser("~")
    lowered = arg.lower()
    if not arg:
        target = home
    elif lowered in WELL_KNOWN_FOLDERS:
        target = os.path.join(home, WELL_KNOWN_FOLDERS[lowered])
    elif arg == "~":
        target = home
    elif arg == "..":
        target = os.path.dirname(os.path.normpath(cwd))
    elif os.path.isabs(arg):
        target = arg
    else:
        relative = os.path.join(cwd, arg)
        target = relative
        if not os.path.exists(relative):
            for candidate in fallback_locations(arg, cwd, home):
                if os.path.isdir(candidate):
                    target = candidate
                    break
    return os.path.normpath(target)


def native_cd_command(path: str, flavor: str) -> str:
    """Format a directory change for the given shell flavor (no terminator)."""
    if flavor == "powershell":
        forward = path.replace("\\", "/")
        return f'Set-Location "{forward}"'
    if flavor == "cmd":
        return f'cd /d "{path}"'
    return f"cd {shlex.quote(path)}"
