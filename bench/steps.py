"""
Adapters around the bench tools.

Each tool only prints free text. The ``interpret_*`` functions turn that text
into a ``StepResult``; nothing outside this module looks at the raw output
except to attach it to a check run as diagnostics.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from bench.runner import ToolInvocationError, ToolOutput, build_command, run_tool, spawn_tool

log = logging.getLogger("webhook.bench")

_MEAN_CURRENT = re.compile(r"current_mean\(A\)[\"']?\s*(?:=>|:)\s*([-+]?[0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)")


@dataclass(frozen=True)
class StepResult:
    ok: bool
    conclusion: str = "success"
    title: str = ""
    summary: str = ""
    message: str = ""
    value: Optional[float] = None
    path: Optional[Path] = None


def interpret_flash_output(text: str) -> StepResult:
    if "cannot open gdb interface" in text:
        return StepResult(
            ok=False,
            conclusion="cancelled",
            title="cannot open gdb interface. A cable is disconnected or the power is off",
            summary="cannot open gdb interface. A cable is disconnected or the power is off. "
                    "Did the RESET pin inverter light on fire?",
            message=text,
        )
    if "done." not in text:
        return StepResult(
            ok=False,
            conclusion="cancelled",
            title="unknown error",
            summary="Unknown error. Details below",
            message=text,
        )
    return StepResult(ok=True, title="flashed", message=text)


def interpret_measurement_output(text: str) -> StepResult:
    if "error" in text.lower():
        return StepResult(
            ok=False,
            conclusion="cancelled",
            title="Joulescope error",
            summary="Joulescope error. Details below. Is Joulescope connected and no application "
                    "other than this script using it? Close Joulescope GUI.",
            message=text,
        )
    m = _MEAN_CURRENT.search(text)
    if not m:
        return StepResult(
            ok=False,
            conclusion="cancelled",
            title="No mean current in measurement output",
            summary="The measurement finished but did not report current_mean(A). Details below",
            message=text,
        )
    return StepResult(ok=True, title="measured", message=text, value=float(m.group(1)))


def _from_invocation_error(e: ToolInvocationError, title: str) -> StepResult:
    return StepResult(ok=False, conclusion="cancelled", title=title, summary=f"{title}. Details below", message=str(e))


class BenchSteps:
    """The physical bench: one device under test, one power analyzer."""

    def __init__(
        self,
        workdir: str,
        flash_command: str,
        measure_command: str,
        screenshot_command: str,
        chart_command: str,
        viewer_command: str = "",
        kill_viewer_command: str = "",
        measurement_duration_s: int = 90,
        timeout_s: int = 600,
        settle_s: float = 10.0,
        run: Callable[..., ToolOutput] = run_tool,
        spawn: Callable[..., object] = spawn_tool,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workdir = Path(workdir)
        self.flash_command = flash_command
        self.measure_command = measure_command
        self.screenshot_command = screenshot_command
        self.chart_command = chart_command
        self.viewer_command = viewer_command
        self.kill_viewer_command = kill_viewer_command
        self.measurement_duration_s = measurement_duration_s
        self.timeout_s = timeout_s
        self.settle_s = settle_s
        self._run = run
        self._spawn = spawn
        self._sleep = sleep

    def _tool(self, template: str, **values: object) -> ToolOutput:
        return self._run(build_command(template, **values), cwd=str(self.workdir), timeout_s=self.timeout_s)

    def flash(self, firmware: str) -> StepResult:
        log.info("Flashing over JTAG: %s", firmware)
        try:
            out = self._tool(self.flash_command, firmware=firmware)
        except ToolInvocationError as e:
            return _from_invocation_error(e, "Flash tool could not run")
        return interpret_flash_output(out.text)

    def prepare_measurement(self) -> None:
        """Close a stale viewer and drop old recordings so the newest one is unambiguous."""
        self.close_viewer()
        for pattern in ("*.jls", "*.png"):
            for old in self.workdir.glob(pattern):
                old.unlink(missing_ok=True)

    def measure(self) -> StepResult:
        log.info("Starting Joulescope measurement (%ss)", self.measurement_duration_s)
        try:
            out = self._tool(self.measure_command, duration=self.measurement_duration_s)
        except ToolInvocationError as e:
            return _from_invocation_error(e, "Joulescope error")
        result = interpret_measurement_output(out.text)
        if not result.ok:
            return result
        recordings = sorted(self.workdir.glob("*.jls"), key=lambda p: p.stat().st_mtime)
        return StepResult(
            ok=True,
            title=result.title,
            message=result.message,
            value=result.value,
            path=recordings[-1] if recordings else None,
        )

    def screenshot(self, recording: Optional[Path], image_name: str) -> StepResult:
        if self.viewer_command and recording is not None:
            try:
                self._spawn(build_command(self.viewer_command, jls=str(recording)), cwd=str(self.workdir))
                # the viewer needs time to open and plot the whole capture
                self._sleep(self.settle_s)
            except ToolInvocationError as e:
                return _from_invocation_error(e, "Viewer could not start")
        try:
            out = self._tool(self.screenshot_command, image=image_name)
        except ToolInvocationError as e:
            return _from_invocation_error(e, "Screenshot failed")
        return self._produced(image_name, out)

    def chart(self, image_name: str, csv_line: str) -> StepResult:
        try:
            out = self._tool(self.chart_command, image=image_name, csv_line=csv_line)
        except ToolInvocationError as e:
            return _from_invocation_error(e, "Chart failed")
        return self._produced(image_name, out)

    def close_viewer(self) -> None:
        if not self.kill_viewer_command:
            return
        try:
            self._tool(self.kill_viewer_command)
        except ToolInvocationError as e:
            log.warning("could not close viewer: %s", e)

    def _produced(self, name: str, out: ToolOutput) -> StepResult:
        path = self.workdir / name
        if not path.exists():
            return StepResult(ok=False, conclusion="neutral", title=f"{name} was not produced", message=out.text)
        return StepResult(ok=True, title=name, message=out.text, path=path)
