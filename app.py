"""
GitHub App webhook for the power-consumption bench.

  1) Verify the webhook signature (X-Hub-Signature-256 / X-Hub-Signature).
  2) Parse the event and route it: check_suite / pull_request / rerequested
     check runs only register a queued check run; a newly created check run
     starts a measurement.
  3) Mint an installation token for this app.
  4) Hand the measurement to the run queue and acknowledge right away; the
     worker polls CircleCI for the firmware, flashes the board, measures its
     current draw and completes the check run.

Run with: uvicorn app:app --host 0.0.0.0 --port 3000
"""

import logging
import os
import time
from typing import Any, Dict, Optional

import requests
from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from config import Settings
from dispatch import DedupGuard, EventDispatcher, InboundEvent
from github import AppAuthenticator, AuthenticationError
from measure import MeasurementJob, run_measurement
from verify import verify_signature
from worker import RunQueue

load_dotenv(dotenv_path=".env")  # Load variables from .env if present (handy for local dev)

# ---------------- App / Logging ----------------
app = FastAPI(title="Power Bench Checks", version="1.0.0")
log = logging.getLogger("webhook")
SETTINGS = Settings.from_env()
logging.basicConfig(level=os.getenv("LOGLEVEL", "INFO"))
BOOT_TS = time.time()

# ---------------- Wiring ----------------
GUARD = DedupGuard()


def _run_job(job: MeasurementJob) -> None:
    run_measurement(SETTINGS, job)


RUNS: "RunQueue[MeasurementJob]" = RunQueue(_run_job, key=lambda job: job.head_sha, workers=SETTINGS.run_workers)

dispatcher = EventDispatcher(
    SETTINGS,
    GUARD,
    AppAuthenticator(SETTINGS.app_id, SETTINGS.private_key, SETTINGS.github_api, SETTINGS.http_timeout_s),
    submit=RUNS.submit,
)

# ---------------- Startup / Health ----------------

@app.on_event("startup")
def _startup() -> None:
    from starlette.routing import Route
    for r in app.router.routes:
        if isinstance(r, Route):
            log.info("route registered: %s methods=%s", r.path, sorted(r.methods))
    log.info("webhook secrets configured: %d repository=%s", len(SETTINGS.webhook_secrets), SETTINGS.repository)
    RUNS.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    RUNS.stop(timeout=5)


@app.get("/health", include_in_schema=False)
def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "service": "power-bench-checks",
        "uptime_s": int(time.time() - BOOT_TS),
        "has_secret": bool(SETTINGS.webhook_secrets),
        "workers_running": RUNS.running,
        "last_measured_sha": GUARD.last_sha,
    }

# ---------------- Webhook ----------------

@app.post("/webhook")
@app.post("/event_handler", include_in_schema=False)
async def webhook(
    request: Request,
    x_github_event: str = Header(..., alias="X-GitHub-Event"),
    x_github_delivery: str = Header("", alias="X-GitHub-Delivery"),
    x_hub_signature_256: Optional[str] = Header(None, alias="X-Hub-Signature-256"),
    x_hub_signature: Optional[str] = Header(None, alias="X-Hub-Signature"),
):
    body: bytes = await request.body()

    provided = x_hub_signature_256 or x_hub_signature
    if not SETTINGS.webhook_secrets:
        log.error("no webhook secrets configured; rejecting delivery=%s", x_github_delivery)
        raise HTTPException(status_code=401, detail="Invalid signature")
    if not verify_signature(provided, body, SETTINGS.webhook_secrets):
        log.warning("signature mismatch delivery=%s provided_suffix=%s", x_github_delivery, (provided or "")[-6:])
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        ev = InboundEvent.parse(x_github_event, body, x_github_delivery)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    log.info("delivery=%s event=%s action=%s len=%d", x_github_delivery, x_github_event, ev.action, len(body))

    if x_github_event == "ping":
        return {"ok": True, "pong": True}

    try:
        return await run_in_threadpool(dispatcher.dispatch, ev)
    except AuthenticationError as e:
        log.error("token acquisition failed: %s", e)
        raise HTTPException(status_code=500, detail="Token acquisition failed")
    except requests.RequestException as e:
        log.error("failed to create check run: %s", e)
        raise HTTPException(status_code=500, detail="Check run creation failed")
