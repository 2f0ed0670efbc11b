"""
One measurement run for one commit:

  1) mark the check run in progress,
  2) wait for CircleCI to build the firmware and download it,
  3) flash the device and record its current draw,
  4) screenshot the capture, chart the history, upload both,
  5) complete the check run with the verdict.

Whatever happens after step 1, the check run gets exactly one completion.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import requests

from backoff import RetryBudget
from bench.steps import BenchSteps, StepResult
from bench.storage import ArtifactStore
from checks import COMPLETED, StatusReporter, render_summary
from circleci import CircleCIClient
from config import Settings
from github import GitHubClient, InstallationToken
from poller import ArtifactTarget, PipelinePoller, PollOutcome

log = logging.getLogger("webhook.measure")

# attempts at the final check-run update before the run gives up on it
COMPLETE_ATTEMPTS = 3


@dataclass(frozen=True)
class MeasurementJob:
    repo_full_name: str
    repo_name: str
    head_sha: str
    check_run_id: int
    token: InstallationToken
    delivery: str = ""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeasurementRun:
    def __init__(
        self,
        reporter: StatusReporter,
        poller: PipelinePoller,
        bench: BenchSteps,
        store: ArtifactStore,
        firmware_path: str,
        threshold_a: float,
        max_retry_elapsed_s: float,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.reporter = reporter
        self.poller = poller
        self.bench = bench
        self.store = store
        self.firmware_path = firmware_path
        self.threshold_a = threshold_a
        self.max_retry_elapsed_s = max_retry_elapsed_s
        self.now = now
        self.sleep = sleep

    def execute(self, job: MeasurementJob) -> Optional[str]:
        """Run to a verdict and return the conclusion reported on the check run."""
        repo, run_id = job.repo_full_name, job.check_run_id
        try:
            self.reporter.set_running(repo, run_id)
            return self._measure(job)
        except Exception as e:
            log.exception("measurement run for %s failed", job.head_sha[:8])
            run = self.reporter.get(repo, run_id)
            if run is not None and run.status == COMPLETED:
                return run.conclusion
            try:
                self._complete(repo, run_id, "failure", "Internal error",
                               "The measurement run stopped unexpectedly. Details below",
                               text=str(e))
            except Exception as final:
                log.error("final completion failed: %s", final)
                return None
            return "failure"

    def _complete(self, repo: str, run_id: int, conclusion: str, title: str, summary: str,
                  text: Optional[str] = None) -> None:
        """Send the terminal update, retrying failed requests a few times."""
        for attempt in range(1, COMPLETE_ATTEMPTS + 1):
            try:
                self.reporter.complete(repo, run_id, conclusion, title, summary, text=text)
                return
            except requests.RequestException as e:
                if attempt == COMPLETE_ATTEMPTS:
                    raise
                log.warning("completing check run %s failed (attempt %d): %s", run_id, attempt, e)
                self.sleep(2 ** attempt)

    def _finish(self, job: MeasurementJob, conclusion: str, title: str, summary: str, text: Optional[str] = None) -> str:
        self._complete(job.repo_full_name, job.check_run_id, conclusion, title, summary, text=text)
        return conclusion

    def _step_failed(self, job: MeasurementJob, step: StepResult) -> str:
        return self._finish(job, step.conclusion, step.title, step.summary or step.title, text=step.message or None)

    def _measure(self, job: MeasurementJob) -> str:
        poll = self.poller.poll(job.head_sha)
        if poll.outcome is PollOutcome.TIMED_OUT:
            return self._finish(
                job, "timed_out", "Timed out. Did CircleCI build successfully?",
                f"Firmware download did not finish after {self.max_retry_elapsed_s:.0f}s. "
                "Did CircleCI build successfully?",
                text=poll.detail,
            )
        if poll.outcome is PollOutcome.JOB_FAILED_CANCELED:
            return self._finish(job, "cancelled", "No firmware to measure",
                                "CircleCI job failed/canceled. No firmware to measure.", text=poll.detail)
        if poll.outcome is PollOutcome.AUTH_FAILED:
            return self._finish(job, "failure", "CircleCI rejected the API token",
                                "HTTP 401 from CircleCI. Check CIRCLECI_API_TOKEN.", text=poll.detail)

        # No QSPI erase before flashing: it holds the device serial number.
        flashed = self.bench.flash(self.firmware_path)
        if not flashed.ok:
            return self._step_failed(job, flashed)

        self.bench.prepare_measurement()
        measured = self.bench.measure()
        if not measured.ok:
            return self._step_failed(job, measured)

        stamp = self.now()
        image_name = stamp.strftime("%Y%m%d_%H%M%S.png")
        chart_name = stamp.strftime("%Y%m%d_%H%M%S_first_few_s.png")
        mean = measured.value
        conclusion = "failure" if mean > self.threshold_a else "success"

        shot = self.bench.screenshot(measured.path, image_name)
        if not shot.ok:
            log.warning("screenshot for %s: %s", job.head_sha[:8], shot.title)
        chart = self.bench.chart(chart_name, f"{stamp:%Y-%m-%d},{job.head_sha[:8]},{mean}")
        if not chart.ok:
            log.warning("chart for %s: %s", job.head_sha[:8], chart.title)

        jls_url = self.store.upload(measured.path) if measured.path else None
        img_url = self.store.upload(shot.path) if shot.ok else None
        chart_url = self.store.upload(chart.path) if chart.ok else None
        self.bench.close_viewer()

        log.info("commit %s mean current %sA (threshold %sA): %s", job.head_sha[:8], mean, self.threshold_a, conclusion)
        return self._finish(job, conclusion, f"{mean} A mean",
                            render_summary(jls_url, img_url, chart_url), text=measured.message)


def build_run(settings: Settings, reporter: StatusReporter) -> MeasurementRun:
    poller = PipelinePoller(
        CircleCIClient(settings.circleci_token, settings.circleci_api, settings.http_timeout_s),
        project_slug=settings.circleci_project_slug,
        job_name=settings.circleci_job_name,
        targets=[
            ArtifactTarget(settings.firmware_artifact_path, settings.firmware_dest),
            ArtifactTarget(settings.bootloader_artifact_path, settings.bootloader_dest),
        ],
        budget=RetryBudget(settings.max_retry_elapsed_s, settings.initial_backoff_s),
        fail_fast_on_401=settings.circleci_fail_fast_on_401,
    )
    bench = BenchSteps(
        workdir=settings.bench_workdir,
        flash_command=settings.flash_command,
        measure_command=settings.measure_command,
        screenshot_command=settings.screenshot_command,
        chart_command=settings.chart_command,
        viewer_command=settings.viewer_command,
        kill_viewer_command=settings.kill_viewer_command,
        measurement_duration_s=settings.measurement_duration_s,
        timeout_s=settings.step_timeout_s,
        settle_s=settings.screenshot_settle_s,
    )
    store = ArtifactStore(settings.s3_bucket, settings.s3_region,
                          settings.aws_access_key_id, settings.aws_secret_access_key)
    return MeasurementRun(reporter, poller, bench, store, settings.firmware_dest,
                          settings.current_threshold_a, settings.max_retry_elapsed_s)


def run_measurement(settings: Settings, job: MeasurementJob) -> Optional[str]:
    reporter = StatusReporter(
        GitHubClient(job.token.token, settings.github_api, settings.http_timeout_s),
        settings.resolved_check_name,
    )
    try:
        run = build_run(settings, reporter)
    except Exception as e:
        log.exception("could not set up measurement run for %s", job.head_sha[:8])
        reporter.complete(job.repo_full_name, job.check_run_id, "failure", "Internal error",
                          "The measurement run could not start. Details below", text=str(e))
        return "failure"
    return run.execute(job)
