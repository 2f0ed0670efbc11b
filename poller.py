"""
Find the firmware build for a commit on CircleCI and download its images.

pipeline (by commit) -> first workflow -> artifact-producing job -> artifacts.
Every lookup is retried with exponential backoff; all of them draw on one
``RetryBudget`` so the whole poll is bounded. A job that CircleCI reports as
failed or canceled ends the poll at once.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from backoff import Attempt, BudgetExceeded, Fatal, Ok, Retryable, RetryBudget, retry_call
from circleci import CircleCIAuthError, CircleCIClient, CircleCIError

log = logging.getLogger("webhook.poller")

TERMINAL_JOB_STATES = {"failed", "canceled"}


class PollOutcome(str, enum.Enum):
    SUCCESS = "success"
    JOB_FAILED_CANCELED = "job-failed-canceled"
    TIMED_OUT = "timed-out"
    # only with fail_fast_on_401; by default a 401 is retried like any other error
    AUTH_FAILED = "auth-failed"


@dataclass(frozen=True)
class ArtifactRef:
    path: str
    url: str


@dataclass(frozen=True)
class ArtifactTarget:
    """An artifact the job must publish and where to put it locally."""
    path: str
    destination: str


@dataclass
class PollResult:
    outcome: PollOutcome
    detail: str = ""
    job_number: Optional[int] = None
    downloaded: Dict[str, str] = field(default_factory=dict)


class PipelinePoller:
    def __init__(
        self,
        client: CircleCIClient,
        project_slug: str,
        job_name: str,
        targets: List[ArtifactTarget],
        budget: RetryBudget,
        fail_fast_on_401: bool = False,
    ):
        self.client = client
        self.project_slug = project_slug
        self.job_name = job_name
        self.targets = targets
        self.budget = budget
        self.fail_fast_on_401 = fail_fast_on_401

    def _classify(self, exc: Exception) -> Attempt:
        if isinstance(exc, CircleCIAuthError):
            log.error("CircleCI rejected the API token: %s", exc)
            if self.fail_fast_on_401:
                raise exc
            return Retryable(str(exc))
        if isinstance(exc, (CircleCIError, requests.RequestException)):
            return Retryable(str(exc))
        raise exc

    def _retry(self, what: str, operation) -> Ok:
        attempt = retry_call(operation, self.budget, what, classify=self._classify)
        if isinstance(attempt, Fatal):
            raise _Stop(attempt.error)
        return attempt

    def poll(self, head_sha: str) -> PollResult:
        try:
            pipeline_id = self._retry("pipeline lookup", lambda: self._find_pipeline(head_sha)).value
            workflow_id = self._retry("workflow lookup", lambda: self._first_workflow(pipeline_id)).value
            job_number = self._retry("job lookup", lambda: self._finished_job(workflow_id, head_sha)).value
            artifacts = self._retry("artifact lookup", lambda: self._required_artifacts(job_number)).value
            downloaded = {}
            for target in self.targets:
                ref = artifacts[target.path]
                self._retry(f"download {target.path}", lambda: Ok(self.client.download(ref.url, target.destination)))
                downloaded[target.path] = target.destination
        except _Stop as stop:
            return PollResult(PollOutcome.JOB_FAILED_CANCELED, detail=str(stop))
        except BudgetExceeded as e:
            return PollResult(PollOutcome.TIMED_OUT, detail=str(e))
        except CircleCIAuthError as e:
            return PollResult(PollOutcome.AUTH_FAILED, detail=str(e))
        log.info("firmware for %s downloaded from job %s", head_sha[:8], job_number)
        return PollResult(PollOutcome.SUCCESS, job_number=job_number, downloaded=downloaded)

    def _find_pipeline(self, head_sha: str) -> Attempt:
        for item in self.client.list_pipelines(self.project_slug):
            if (item.get("vcs") or {}).get("revision") == head_sha:
                return Ok(item["id"])
        return Retryable(f"no pipeline recorded yet for commit {head_sha}")

    def _first_workflow(self, pipeline_id: str) -> Attempt:
        workflows = self.client.list_workflows(pipeline_id)
        if not workflows:
            return Retryable(f"pipeline {pipeline_id} has no workflow yet")
        return Ok(workflows[0]["id"])

    def _finished_job(self, workflow_id: str, head_sha: str) -> Attempt:
        job = _first(self.client.list_jobs(workflow_id), "name", self.job_name)
        status = (job or {}).get("status")
        if status in TERMINAL_JOB_STATES:
            # canceled usually means a newer commit on the same PR superseded this one
            log.info("CircleCI %s job %s for commit %s", self.job_name, status, head_sha)
            return Fatal(f"CircleCI {self.job_name} job {status}")
        if not status:
            return Retryable(f"CircleCI {self.job_name} job not created yet. Commit {head_sha}")
        if status != "success":
            return Retryable(f"{self.job_name} job status: {status}")
        return Ok(job["job_number"])

    def _required_artifacts(self, job_number: int) -> Attempt:
        items = self.client.list_artifacts(self.project_slug, job_number)
        found: Dict[str, ArtifactRef] = {}
        for target in self.targets:
            item = _first(items, "path", target.path)
            if item is None:
                return Retryable(f"job {job_number} has no artifact {target.path}")
            found[target.path] = ArtifactRef(path=item["path"], url=item["url"])
        return Ok(found)


class _Stop(Exception):
    pass


def _first(items: List[Dict[str, Any]], key: str, value: Any) -> Optional[Dict[str, Any]]:
    return next((item for item in items if item.get(key) == value), None)
