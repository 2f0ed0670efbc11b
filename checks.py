"""
Check-run lifecycle: queued -> in_progress -> completed.

The reporter keeps a local view of every check run it touches so the
lifecycle can only move forward and a completed run is never patched again.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

log = logging.getLogger("webhook.checks")

QUEUED = "queued"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
_STATUS_ORDER = {QUEUED: 0, IN_PROGRESS: 1, COMPLETED: 2}

CONCLUSIONS = frozenset({
    "success", "failure", "cancelled", "timed_out",
    "neutral", "action_required", "stale", "skipped",
})

# GitHub caps output.summary and output.text at 65535 characters.
MAX_OUTPUT_CHARS = 65535


class CheckRunStateError(RuntimeError):
    """A check-run transition that would move backwards or reopen a completed run."""


class ChecksAPI(Protocol):
    def create_check_run(self, repo_full_name: str, name: str, head_sha: str) -> int: ...
    def update_check_run(self, repo_full_name: str, check_run_id: int, payload: dict) -> dict: ...


@dataclass
class CheckRun:
    repo_full_name: str
    run_id: int
    status: str = QUEUED
    conclusion: Optional[str] = None
    title: str = ""
    summary: str = ""
    text: Optional[str] = None


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class StatusReporter:
    def __init__(self, api: ChecksAPI, check_name: str):
        self.api = api
        self.check_name = check_name
        self._runs: Dict[Tuple[str, int], CheckRun] = {}
        self._lock = threading.Lock()

    def get(self, repo_full_name: str, run_id: int) -> Optional[CheckRun]:
        return self._runs.get((repo_full_name, run_id))

    def _advance(self, repo_full_name: str, run_id: int, status: str, payload: Dict[str, Any]) -> CheckRun:
        """
        Send ``payload`` and record the new status only once GitHub accepted it.
        A failed update leaves the local record where it was.
        """
        with self._lock:
            run = self._runs.get((repo_full_name, run_id)) or CheckRun(repo_full_name, run_id)
            if run.status == COMPLETED:
                raise CheckRunStateError(f"check run {run_id} is already completed")
            if _STATUS_ORDER[status] < _STATUS_ORDER[run.status]:
                raise CheckRunStateError(f"check run {run_id} cannot move from {run.status} to {status}")
            self.api.update_check_run(repo_full_name, run_id, payload)
            run.status = status
            self._runs[(repo_full_name, run_id)] = run
            return run

    def open(self, repo_full_name: str, head_sha: str, title: Optional[str] = None) -> int:
        run_id = self.api.create_check_run(repo_full_name, title or self.check_name, head_sha)
        with self._lock:
            self._runs[(repo_full_name, run_id)] = CheckRun(repo_full_name, run_id, title=title or self.check_name)
        log.info("check run %s queued for %s@%s", run_id, repo_full_name, head_sha[:8])
        return run_id

    def set_running(self, repo_full_name: str, run_id: int) -> None:
        self._advance(repo_full_name, run_id, IN_PROGRESS, {"status": IN_PROGRESS, "started_at": _now()})
        log.info("check run %s in progress", run_id)

    def complete(
        self,
        repo_full_name: str,
        run_id: int,
        conclusion: str,
        title: str,
        summary: str,
        text: Optional[str] = None,
    ) -> None:
        if conclusion not in CONCLUSIONS:
            raise ValueError(f"unknown check-run conclusion: {conclusion!r}")
        output = {"title": title, "summary": summary[:MAX_OUTPUT_CHARS]}
        if text:
            output["text"] = text[:MAX_OUTPUT_CHARS]
        run = self._advance(repo_full_name, run_id, COMPLETED, {
            "status": COMPLETED,
            "completed_at": _now(),
            "conclusion": conclusion,
            "output": output,
        })
        run.conclusion, run.title, run.summary, run.text = conclusion, title, summary, text
        log.info("check run %s completed: %s (%s)", run_id, conclusion, title)


def render_summary(jls_url: Optional[str], screenshot_url: Optional[str], chart_url: Optional[str]) -> str:
    parts = ["Programmed and measured successfully."]
    if jls_url:
        parts.append(f'<a href="{jls_url}">Download JLS file to see in Joulescope GUI (deleted after 7 days)</a>')
    for url in (screenshot_url, chart_url):
        if url:
            parts.append(f'<img src="{url}">')
    return "</p>".join(parts)
