import enum
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from checks import StatusReporter
from config import Settings
from github import AppAuthenticator, GitHubClient, InstallationToken
from measure import MeasurementJob

log = logging.getLogger("webhook.dispatch")


@dataclass(frozen=True)
class InboundEvent:
    event: str
    body: bytes
    payload: Dict[str, Any] = field(repr=False)
    action: Optional[str] = None
    delivery: str = ""
    repo_name: str = ""
    repo_full_name: str = ""
    head_sha: str = ""
    installation_id: Optional[int] = None
    check_run_id: Optional[int] = None
    app_id: Optional[str] = None

    @classmethod
    def parse(cls, event: str, body: bytes, delivery: str = "") -> "InboundEvent":
        """Raises ValueError when the body is not a JSON object."""
        payload = json.loads(body.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("webhook payload is not a JSON object")

        repo = _object(payload, "repository")
        check_run = _object(payload, "check_run")
        check_suite = _object(payload, "check_suite")
        pull_request = _object(payload, "pull_request")
        # The head SHA lives in a different place for each event type.
        if check_run:
            head_sha = check_run.get("head_sha")
        elif check_suite:
            head_sha = check_suite.get("head_sha")
        elif pull_request:
            head_sha = _object(pull_request, "head").get("sha")
        else:
            head_sha = None
        installation = _object(payload, "installation").get("id")
        app = _object(check_run, "app").get("id")

        return cls(
            event=event,
            body=body,
            payload=payload,
            action=payload.get("action"),
            delivery=delivery,
            repo_name=repo.get("name") or "",
            repo_full_name=repo.get("full_name") or "",
            head_sha=head_sha or "",
            installation_id=int(installation) if installation else None,
            check_run_id=int(check_run["id"]) if check_run.get("id") else None,
            app_id=str(app) if app is not None else None,
        )


def _object(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"webhook field {key!r} is not an object")
    return value


class DedupGuard:
    """
    Remembers the last commit that started a measurement run.

    GitHub delivers more than one check_run ``created`` event per push, so the
    same commit is refused twice in a row. Only the immediately previous SHA
    is remembered: A, B, A starts three runs.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_sha = ""

    @property
    def last_sha(self) -> str:
        with self._lock:
            return self._last_sha

    def check_and_set(self, sha: str) -> bool:
        """Record ``sha`` and return True unless it was already the last one."""
        with self._lock:
            if sha == self._last_sha:
                return False
            self._last_sha = sha
            return True


class Route(str, enum.Enum):
    MEASURE = "measure"
    CHECK = "check"
    IGNORE = "ignore"


_ROUTES = {
    ("check_run", "created"): Route.MEASURE,
    ("check_run", "rerequested"): Route.CHECK,
    ("check_suite", "requested"): Route.CHECK,
    ("check_suite", "rerequested"): Route.CHECK,
    ("pull_request", "opened"): Route.CHECK,
    ("pull_request", "synchronize"): Route.CHECK,
}


def route(event: str, action: Optional[str]) -> Route:
    return _ROUTES.get((event, action or ""), Route.IGNORE)


class EventDispatcher:
    def __init__(
        self,
        settings: Settings,
        guard: DedupGuard,
        authenticator: AppAuthenticator,
        submit: Callable[[MeasurementJob], None],
        reporter_factory: Optional[Callable[[InstallationToken], StatusReporter]] = None,
    ):
        self.settings = settings
        self.guard = guard
        self.authenticator = authenticator
        self.submit = submit
        self.reporter_factory = reporter_factory or self._default_reporter

    def _default_reporter(self, token: InstallationToken) -> StatusReporter:
        client = GitHubClient(token.token, self.settings.github_api, self.settings.http_timeout_s)
        return StatusReporter(client, self.settings.resolved_check_name)

    def _skip(self, ev: InboundEvent) -> Optional[str]:
        if ev.repo_name != self.settings.repository:
            return "repository"
        if not ev.head_sha:
            return "no head sha"
        if ev.event == "check_run" and ev.app_id != str(self.settings.app_id):
            return "other app"
        return None

    def dispatch(self, ev: InboundEvent) -> Dict[str, Any]:
        """
        Route one verified event. Raises AuthenticationError if the app
        cannot get an installation token; no check run is touched then.
        """
        resp: Dict[str, Any] = {"ok": True, "event": ev.event, "action": ev.action}
        r = route(ev.event, ev.action)
        if r is Route.IGNORE:
            return {**resp, "ignored": True}
        reason = self._skip(ev)
        if reason:
            log.info("delivery=%s ignored (%s) repo=%s", ev.delivery, reason, ev.repo_full_name)
            return {**resp, "ignored": reason}

        token = self.authenticator.installation_token(self.settings.installation_id or ev.installation_id)

        if r is Route.MEASURE:
            if not self.guard.check_and_set(ev.head_sha):
                log.info("delivery=%s duplicate check_run for %s; not measuring twice", ev.delivery, ev.head_sha[:8])
                return {**resp, "routed": r.value, "head": ev.head_sha, "duplicate": True}
            self.submit(MeasurementJob(
                repo_full_name=ev.repo_full_name,
                repo_name=ev.repo_name,
                head_sha=ev.head_sha,
                check_run_id=ev.check_run_id,
                token=token,
                delivery=ev.delivery,
            ))
            return {**resp, "routed": r.value, "head": ev.head_sha, "check_run": ev.check_run_id}

        run_id = self.reporter_factory(token).open(ev.repo_full_name, ev.head_sha)
        return {**resp, "routed": r.value, "head": ev.head_sha, "check_run": run_id}
