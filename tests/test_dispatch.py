import json
import threading

import pytest

from checks import StatusReporter
from config import Settings
from dispatch import DedupGuard, EventDispatcher, InboundEvent, Route, route
from github import AuthenticationError, InstallationToken

REPO = "dialog_14683_scratch"
APP_ID = "4242"


class FakeAuthenticator:
    def __init__(self, fail=False):
        self.fail = fail
        self.minted = []

    def installation_token(self, installation_id):
        if self.fail:
            raise AuthenticationError("bad credentials")
        self.minted.append(installation_id)
        return InstallationToken(f"ghs_{len(self.minted)}")


def _settings(**overrides):
    base = dict(repository=REPO, app_id=APP_ID, installation_id=18537730, webhook_secrets=["s"])
    base.update(overrides)
    return Settings(**base)


def _event(event, action, sha="abc1234", repo=REPO, app_id=APP_ID, run_id=555):
    payload = {"action": action, "repository": {"name": repo, "full_name": f"happy-health/{repo}"},
               "installation": {"id": 99}}
    if event == "check_run":
        payload["check_run"] = {"id": run_id, "head_sha": sha, "app": {"id": int(app_id)}}
    elif event == "check_suite":
        payload["check_suite"] = {"head_sha": sha}
    elif event == "pull_request":
        payload["pull_request"] = {"head": {"sha": sha}}
    return InboundEvent.parse(event, json.dumps(payload).encode(), delivery="d-1")


@pytest.fixture
def harness(checks_api):
    submitted = []
    auth = FakeAuthenticator()
    dispatcher = EventDispatcher(
        _settings(), DedupGuard(), auth, submit=submitted.append,
        reporter_factory=lambda token: StatusReporter(checks_api, "P8 avg"),
    )
    return dispatcher, submitted, auth, checks_api


@pytest.mark.parametrize("event,action,expected", [
    ("check_run", "created", Route.MEASURE),
    ("check_run", "rerequested", Route.CHECK),
    ("check_suite", "requested", Route.CHECK),
    ("check_suite", "rerequested", Route.CHECK),
    ("pull_request", "opened", Route.CHECK),
    ("pull_request", "synchronize", Route.CHECK),
    ("pull_request", "closed", Route.IGNORE),
    ("check_run", "completed", Route.IGNORE),
    ("push", None, Route.IGNORE),
])
def test_routing_table(event, action, expected):
    assert route(event, action) is expected


def test_parse_reads_head_sha_per_event_type():
    assert _event("check_run", "created", sha="aaa").head_sha == "aaa"
    assert _event("check_suite", "requested", sha="bbb").head_sha == "bbb"
    assert _event("pull_request", "opened", sha="ccc").head_sha == "ccc"
    ev = _event("check_run", "created")
    assert (ev.check_run_id, ev.app_id, ev.installation_id) == (555, APP_ID, 99)


def test_parse_rejects_non_object():
    with pytest.raises(ValueError):
        InboundEvent.parse("check_run", b"[1, 2]")
    with pytest.raises(ValueError):
        InboundEvent.parse("check_run", b"{not json")


@pytest.mark.parametrize("payload", [
    {"action": "created", "repository": "dialog_14683_scratch"},
    {"action": "created", "check_run": "555"},
    {"action": "opened", "pull_request": {"head": "abc1234"}},
    {"action": "created", "check_run": {"id": 555, "app": 4242}},
])
def test_parse_rejects_non_object_sections(payload):
    with pytest.raises(ValueError):
        InboundEvent.parse("check_run", json.dumps(payload).encode())


def test_guard_only_remembers_previous_sha():
    guard = DedupGuard()
    assert [guard.check_and_set(s) for s in ["A", "A", "B", "A", "A"]] == [True, False, True, True, False]
    assert guard.last_sha == "A"


def test_guard_is_atomic_under_concurrency():
    guard = DedupGuard()
    start = threading.Barrier(16)
    wins = []

    def deliver():
        start.wait()
        if guard.check_and_set("abc1234"):
            wins.append(1)

    threads = [threading.Thread(target=deliver) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert wins == [1]


def test_duplicate_created_events_launch_one_run(harness):
    dispatcher, submitted, auth, _ = harness
    first = dispatcher.dispatch(_event("check_run", "created"))
    second = dispatcher.dispatch(_event("check_run", "created"))

    assert first["routed"] == "measure" and "duplicate" not in first
    assert second["duplicate"] is True
    assert [job.head_sha for job in submitted] == ["abc1234"]
    job = submitted[0]
    assert job.check_run_id == 555
    assert job.repo_full_name == f"happy-health/{REPO}"
    assert job.token.token == "ghs_1"


def test_a_b_a_launches_three_runs(harness):
    dispatcher, submitted, _, _ = harness
    for sha in ["A", "B", "A"]:
        dispatcher.dispatch(_event("check_run", "created", sha=sha))
    assert [job.head_sha for job in submitted] == ["A", "B", "A"]


def test_concurrent_duplicate_deliveries_launch_one_run(harness):
    dispatcher, submitted, _, _ = harness
    start = threading.Barrier(8)

    def deliver():
        start.wait()
        dispatcher.dispatch(_event("check_run", "created"))

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(submitted) == 1


@pytest.mark.parametrize("event,action", [
    ("check_run", "rerequested"),
    ("check_suite", "requested"),
    ("check_suite", "rerequested"),
    ("pull_request", "opened"),
    ("pull_request", "synchronize"),
])
def test_check_record_routes_open_a_check_run(harness, event, action):
    dispatcher, submitted, _, checks_api = harness
    resp = dispatcher.dispatch(_event(event, action, sha="def5678"))
    assert resp["routed"] == "check"
    assert checks_api.created[0][2] == "def5678"
    assert resp["check_run"] == checks_api.created[0][3]
    assert submitted == []


def test_other_repository_is_acknowledged_without_action(harness):
    dispatcher, submitted, auth, checks_api = harness
    resp = dispatcher.dispatch(_event("check_run", "created", repo="someone-elses-repo"))
    assert resp == {"ok": True, "event": "check_run", "action": "created", "ignored": "repository"}
    assert submitted == [] and auth.minted == [] and checks_api.created == []


def test_check_runs_of_other_apps_are_ignored(harness):
    dispatcher, submitted, _, _ = harness
    resp = dispatcher.dispatch(_event("check_run", "created", app_id="1"))
    assert resp["ignored"] == "other app"
    assert submitted == []


def test_configured_installation_id_wins(harness):
    dispatcher, _, auth, _ = harness
    dispatcher.dispatch(_event("check_suite", "requested"))
    assert auth.minted == [18537730]


def test_authentication_failure_aborts_before_any_state_change(checks_api):
    submitted = []
    guard = DedupGuard()
    dispatcher = EventDispatcher(
        _settings(), guard, FakeAuthenticator(fail=True), submit=submitted.append,
        reporter_factory=lambda token: StatusReporter(checks_api, "P8 avg"),
    )
    with pytest.raises(AuthenticationError):
        dispatcher.dispatch(_event("check_run", "created"))
    with pytest.raises(AuthenticationError):
        dispatcher.dispatch(_event("check_suite", "requested"))
    assert submitted == [] and checks_api.created == [] and checks_api.updates == []
    assert guard.last_sha == ""
