import base64
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import certifi


def bool_env(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.lower() in {"1","true","yes","on"}


def int_env(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    return int(v) if v else default


def float_env(name: str, default: float) -> float:
    v = (os.environ.get(name) or "").strip()
    return float(v) if v else default


def str_env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def list_env(name: str, default: str = "") -> List[str]:
    return [s.strip() for s in (os.environ.get(name) or default).split(",") if s.strip()]


def ca_bundle() -> str:
    return (
        os.getenv("REQUESTS_CA_BUNDLE")
        or os.getenv("SSL_CERT_FILE")
        or certifi.where()
    )


def read_private_key() -> str:
    """Accept any of: PEM inline, base64 inline, or path to PEM file."""
    key_path = str_env("GITHUB_APP_PRIVATE_KEY_PATH")
    key_b64 = str_env("GITHUB_APP_PRIVATE_KEY_B64")
    if key_path:
        return Path(key_path).read_text()
    if key_b64:
        return base64.b64decode(key_b64).decode("utf-8")
    return str_env("GITHUB_APP_PRIVATE_KEY").replace("\\n", "\n")


@dataclass(frozen=True)
class Settings:
    # GitHub App
    github_api: str = "https://api.github.com"
    webhook_secrets: List[str] = field(default_factory=list)
    app_id: str = ""
    private_key: str = ""
    installation_id: Optional[int] = None

    # Single repository this bench is wired to
    repository: str = "dialog_14683_scratch"
    device_name: str = "P8"
    check_name: str = ""
    measurement_duration_s: int = 90
    current_threshold_a: float = 0.008

    # CircleCI
    circleci_api: str = "https://circleci.com/api/v2"
    circleci_token: str = ""
    circleci_project_slug: str = "gh/happy-health/dialog_14683_scratch"
    circleci_job_name: str = "pack_images"
    firmware_artifact_path: str = "~/builds/freertos_retarget/Happy_P8_QSPI_Release/freertos_retarget.bin"
    bootloader_artifact_path: str = "~/builds/ble_suota_loader/DA14683-00-Release_QSPI/ble_suota_loader.bin"
    firmware_dest: str = "firmware/freertos_retarget.bin"
    bootloader_dest: str = "firmware/ble_suota_loader.bin"
    max_retry_elapsed_s: float = 60 * 14
    initial_backoff_s: float = 1.0
    circleci_fail_fast_on_401: bool = False

    # Artifact storage
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    s3_bucket: str = "power-tester-artifacts"
    s3_region: str = "us-west-1"

    # Bench tools
    bench_workdir: str = "."
    flash_command: str = "initial_flash.bat {firmware}"
    measure_command: str = (
        "python pyjoulescope/bin/trigger.py --start duration --start_duration 1 --end duration "
        "--capture_duration {duration} --display_stats --count 1 --init_power_off 3 --record"
    )
    viewer_command: str = ""
    screenshot_command: str = "screenCapture.bat {image} Joulescope:"
    chart_command: str = "python make_bar_chart.py {image} {csv_line}"
    kill_viewer_command: str = ""
    step_timeout_s: int = 600
    screenshot_settle_s: float = 10.0

    # Service
    http_timeout_s: int = 25
    run_workers: int = 1

    @property
    def resolved_check_name(self) -> str:
        if self.check_name:
            return self.check_name
        return (
            f"{self.device_name} avg < {self.current_threshold_a}A "
            f"{self.measurement_duration_s}s after reset"
        )

    @classmethod
    def from_env(cls) -> "Settings":
        single_secret = str_env("GITHUB_WEBHOOK_SECRET")
        installation = str_env("GITHUB_INSTALLATION_ID")
        return cls(
            github_api=str_env("GITHUB_API", cls.github_api).rstrip("/"),
            webhook_secrets=list_env("GITHUB_WEBHOOK_SECRETS", single_secret),
            app_id=str_env("GITHUB_APP_ID"),
            private_key=read_private_key(),
            installation_id=int(installation) if installation else None,
            repository=str_env("BENCH_REPOSITORY", cls.repository),
            device_name=str_env("BENCH_DEVICE_NAME", cls.device_name),
            check_name=str_env("BENCH_CHECK_NAME"),
            measurement_duration_s=int_env("MEASUREMENT_DURATION_S", cls.measurement_duration_s),
            current_threshold_a=float_env("CURRENT_THRESHOLD_A", cls.current_threshold_a),
            circleci_api=str_env("CIRCLECI_API", cls.circleci_api).rstrip("/"),
            circleci_token=str_env("CIRCLECI_API_TOKEN"),
            circleci_project_slug=str_env("CIRCLECI_PROJECT_SLUG", cls.circleci_project_slug),
            circleci_job_name=str_env("CIRCLECI_JOB_NAME", cls.circleci_job_name),
            firmware_artifact_path=str_env("FIRMWARE_ARTIFACT_PATH", cls.firmware_artifact_path),
            bootloader_artifact_path=str_env("BOOTLOADER_ARTIFACT_PATH", cls.bootloader_artifact_path),
            firmware_dest=str_env("FIRMWARE_DEST", cls.firmware_dest),
            bootloader_dest=str_env("BOOTLOADER_DEST", cls.bootloader_dest),
            max_retry_elapsed_s=float_env("MAX_RETRY_ELAPSED_S", cls.max_retry_elapsed_s),
            initial_backoff_s=float_env("INITIAL_BACKOFF_S", cls.initial_backoff_s),
            circleci_fail_fast_on_401=bool_env("CIRCLECI_FAIL_FAST_ON_401"),
            aws_access_key_id=str_env("AWS_S3_API_KEY_ID"),
            aws_secret_access_key=str_env("AWS_SECRET_ACCESS_KEY"),
            s3_bucket=str_env("S3_BUCKET", cls.s3_bucket),
            s3_region=str_env("S3_REGION", cls.s3_region),
            bench_workdir=str_env("BENCH_WORKDIR", cls.bench_workdir),
            flash_command=str_env("FLASH_COMMAND", cls.flash_command),
            measure_command=str_env("MEASURE_COMMAND", cls.measure_command),
            viewer_command=str_env("VIEWER_COMMAND"),
            screenshot_command=str_env("SCREENSHOT_COMMAND", cls.screenshot_command),
            chart_command=str_env("CHART_COMMAND", cls.chart_command),
            kill_viewer_command=str_env("KILL_VIEWER_COMMAND"),
            step_timeout_s=int_env("STEP_TIMEOUT_S", cls.step_timeout_s),
            screenshot_settle_s=float_env("SCREENSHOT_SETTLE_S", cls.screenshot_settle_s),
            http_timeout_s=int_env("HTTP_TIMEOUT_S", cls.http_timeout_s),
            run_workers=max(1, int_env("RUN_WORKERS", cls.run_workers)),
        )
