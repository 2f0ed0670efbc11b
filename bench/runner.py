from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import List, Optional

log = logging.getLogger("webhook.bench")

# --------------------------------- Public API ---------------------------------

@dataclass
class ToolInvocationError(Exception):
    exit_code: int
    cmd: List[str]
    stdout: str
    stderr: str

    def __str__(self) -> str:
        return _fmt_tool_error(self.cmd, self.exit_code, self.stderr)


@dataclass(frozen=True)
class ToolOutput:
    cmd: List[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def text(self) -> str:
        return (self.stdout or "") + (self.stderr or "")


def build_command(template: str, **values: object) -> List[str]:
    """
    Split a command template and fill ``{placeholders}`` per argument, so a
    substituted value containing spaces stays a single argv entry.
    """
    tokens = shlex.split(template, posix=(os.name != "nt"))
    return [t.format(**values) for t in tokens]


def run_tool(cmd: List[str], cwd: Optional[str] = None, timeout_s: int = 600) -> ToolOutput:
    """Run a bench tool to completion and capture its output. Never raises on a non-zero exit."""
    if not cmd:
        raise ToolInvocationError(exit_code=127, cmd=cmd, stdout="", stderr="empty command")
    log.debug("running %s", shlex.join(cmd))
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_s,
        )
    except FileNotFoundError as e:
        raise ToolInvocationError(exit_code=127, cmd=cmd, stdout="", stderr=str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise ToolInvocationError(
            exit_code=124,
            cmd=cmd,
            stdout=_as_text(e.stdout),
            stderr=f"{cmd[0]} timed out after {timeout_s}s: {_as_text(e.stderr)}",
        ) from e
    out = ToolOutput(cmd=cmd, exit_code=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")
    log.debug("%s exited %s: %s", cmd[0], proc.returncode, out.text[-2000:])
    return out


def spawn_tool(cmd: List[str], cwd: Optional[str] = None) -> subprocess.Popen:
    """Start a long-lived tool (e.g. a viewer window) without waiting for it."""
    try:
        return subprocess.Popen(cmd, cwd=cwd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except FileNotFoundError as e:
        raise ToolInvocationError(exit_code=127, cmd=cmd, stdout="", stderr=str(e)) from e

# --------------------------------- Internals ----------------------------------

def _as_text(v: object) -> str:
    if v is None:
        return ""
    if isinstance(v, bytes):
        return v.decode("utf-8", "replace")
    return str(v)


def _fmt_tool_error(cmd: List[str], code: int, stderr: str) -> str:
    return (
        f"{cmd[0] if cmd else 'tool'} failed (exit={code}).\n"
        f"Command: {shlex.join(cmd)}\n"
        f"STDERR (truncated):\n{(stderr or '').strip()[:800]}"
    )
