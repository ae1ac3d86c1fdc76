"""Guess a client's project root from its page Origin.

A page served from ``http://localhost:5173`` was most likely started by
a dev server whose working directory is the project. Find the process
listening on that port and read its cwd. Best effort: any failure
returns None.
"""

from __future__ import annotations

import os
import subprocess
import sys
from urllib.parse import urlsplit

_COMMAND_TIMEOUT = 3.0


def _pid_listening_on(port: int) -> int | None:
    """Return the PID listening on *port* using `lsof`."""
    try:
        out = subprocess.check_output(
            ["lsof", "-i", f":{port}", "-sTCP:LISTEN", "-t"],
            text=True,
            stderr=subprocess.DEVNULL,
            timeout=_COMMAND_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    for line in out.splitlines():
        line = line.strip()
        if line.isdigit():
            return int(line)
    return None


def _process_cwd(pid: int) -> str | None:
    if sys.platform.startswith("linux"):
        try:
            return os.readlink(f"/proc/{pid}/cwd") or None
        except OSError:
            return None
    try:
        out = subprocess.check_output(
            ["lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn"],
            text=True,
            stderr=subprocess.DEVNULL,
            timeout=_COMMAND_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    for line in out.splitlines():
        if line.startswith("n") and len(line) > 1:
            return line[1:]
    return None


def detect_project_root_from_origin(origin: str | None) -> str | None:
    """Map an Origin header to the cwd of the process serving it."""
    if not origin:
        return None
    try:
        port = urlsplit(origin).port
    except ValueError:
        return None
    if not port:
        return None
    pid = _pid_listening_on(port)
    if pid is None:
        return None
    return _process_cwd(pid)
