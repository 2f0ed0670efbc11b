import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt  # PyJWT
import requests

from config import ca_bundle

log = logging.getLogger("webhook.github")

USER_AGENT = "power-bench-checks/1.0"


class AuthenticationError(RuntimeError):
    """The app could not authenticate; nothing was sent on its behalf."""


def _mask(s: str, keep: int = 4) -> str:
    if not s:
        return ""
    return s[:keep] + "…" + s[-keep:]


def _bearer(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "User-Agent": USER_AGENT,
    }


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return f"InstallationToken(token={_mask(self.token)!r}, expires_at={self.expires_at!r})"


class AppAuthenticator:
    def __init__(self, app_id: str, private_key: str, api_base: str = "https://api.github.com", timeout_s: int = 25):
        self.app_id = app_id
        self.private_key = private_key
        self.api_base = api_base.rstrip("/")
        self.timeout_s = timeout_s

    def app_jwt(self) -> str:
        if not self.app_id:
            raise AuthenticationError("GITHUB_APP_ID is missing")
        key = (self.private_key or "").strip()
        if not key.startswith("-----BEGIN") or "PRIVATE KEY" not in key:
            raise AuthenticationError("GITHUB_APP_PRIVATE_KEY[_PATH] is not a valid PEM private key")
        now = int(time.time())
        # Backdate iat for clock drift; GitHub rejects exp more than 10 minutes out.
        payload = {"iat": now - 60, "exp": now + 9 * 60, "iss": self.app_id}
        try:
            token = jwt.encode(payload, key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise AuthenticationError(f"could not sign app JWT: {e}") from e
        return token.decode() if isinstance(token, (bytes, bytearray)) else token

    def installation_token(self, installation_id: Optional[int]) -> InstallationToken:
        if not installation_id:
            raise AuthenticationError("no installation id configured or present in payload")
        url = f"{self.api_base}/app/installations/{installation_id}/access_tokens"
        try:
            r = requests.post(
                url,
                headers=_bearer(self.app_jwt()),
                timeout=self.timeout_s,
                verify=ca_bundle(),
            )
        except requests.RequestException as e:
            raise AuthenticationError(f"token exchange failed: {e}") from e
        if r.status_code >= 400:
            log.error("POST %s -> %s %s: %s", url, r.status_code, r.reason, r.text[:800])
            raise AuthenticationError(f"token exchange returned HTTP {r.status_code}")
        try:
            body = r.json()
            expires_at = None
            if body.get("expires_at"):
                expires_at = datetime.strptime(body["expires_at"], "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
            token = InstallationToken(token=body["token"], expires_at=expires_at)
        except (ValueError, KeyError, AttributeError) as e:
            raise AuthenticationError(f"unexpected token response: {e!r}") from e
        log.info("minted installation token %s for installation=%s", _mask(token.token), installation_id)
        return token


class GitHubClient:
    """Check-runs API, authenticated as one app installation."""

    def __init__(self, token: str, base_url: str = "https://api.github.com", timeout_s: int = 25):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = requests.Session()
        self.session.headers.update(_bearer(token))
        self.session.headers["X-GitHub-Api-Version"] = "2022-11-28"

    def _request(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        r = self.session.request(method, url, json=payload, timeout=self.timeout_s, verify=ca_bundle())
        if r.status_code >= 400:
            log.error("%s %s -> %s %s body=%s resp=%s", method, url, r.status_code, r.reason,
                      str(payload)[:400], r.text[:800])
        r.raise_for_status()
        try:
            return r.json()
        except ValueError:
            return {}

    def create_check_run(self, repo_full_name: str, name: str, head_sha: str) -> int:
        js = self._request("POST", f"/repos/{repo_full_name}/check-runs", {"name": name, "head_sha": head_sha})
        if not isinstance(js, dict) or not js.get("id"):
            raise requests.exceptions.InvalidJSONError(f"check run for {repo_full_name}@{head_sha[:8]} came back without an id")
        return int(js["id"])

    def update_check_run(self, repo_full_name: str, check_run_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/repos/{repo_full_name}/check-runs/{check_run_id}", payload)
