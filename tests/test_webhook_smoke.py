import json
import hmac
import hashlib
from importlib import reload

from fastapi.testclient import TestClient

from github import InstallationToken


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_webhook_smoke(monkeypatch):
    monkeypatch.setenv("GITHUB_WEBHOOK_SECRETS", "testsecret")
    monkeypatch.setenv("GITHUB_APP_ID", "4242")
    monkeypatch.setenv("BENCH_REPOSITORY", "demo-repo")
    monkeypatch.delenv("GITHUB_INSTALLATION_ID", raising=False)

    import app as appmod
    reload(appmod)

    # --- Hard stubs: no network, no bench, no sleeps ---

    minted = []

    def _token(installation_id):
        minted.append(installation_id)
        return InstallationToken("dummy-token")

    monkeypatch.setattr(appmod.dispatcher.authenticator, "installation_token", _token)

    measured = []
    monkeypatch.setattr(appmod, "run_measurement", lambda settings, job: measured.append(job))

    payload = {
        "action": "created",
        "installation": {"id": 999},
        "repository": {"name": "demo-repo", "full_name": "octo/demo-repo"},
        "check_run": {"id": 123, "head_sha": "head456", "app": {"id": 4242}},
    }
    body = json.dumps(payload).encode()
    headers = {
        "X-GitHub-Event": "check_run",
        "X-GitHub-Delivery": "smoke-123",
        "X-Hub-Signature-256": _sign("testsecret", body),
        "Content-Type": "application/json",
    }

    # Entering the client runs startup, which starts the run queue workers.
    with TestClient(appmod.app) as client:
        assert client.get("/health").json()["workers_running"] is True
        resp = client.post("/webhook", content=body, headers=headers)
        appmod.RUNS.join()

    assert resp.status_code == 200, resp.text
    assert resp.json() == {
        "ok": True,
        "event": "check_run",
        "action": "created",
        "routed": "measure",
        "head": "head456",
        "check_run": 123,
    }
    assert minted == [999]
    assert [(job.repo_full_name, job.head_sha, job.check_run_id) for job in measured] == [("octo/demo-repo", "head456", 123)]
    assert not appmod.RUNS.running
