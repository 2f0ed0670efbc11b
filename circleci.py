# circleci.py
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from config import ca_bundle

log = logging.getLogger("webhook.circleci")


class CircleCIError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CircleCIAuthError(CircleCIError):
    """HTTP 401: the CircleCI API token is missing or wrong."""


class CircleCIClient:
    def __init__(self, token: str, base_url: str = "https://circleci.com/api/v2", timeout_s: int = 25):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = requests.Session()
        self.session.headers.update({
            "Circle-Token": token,
            "Accept": "application/json",
            "User-Agent": "power-bench-checks",
        })

    def _get(self, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        resp = self.session.get(url, timeout=self.timeout_s, verify=ca_bundle(), **kwargs)
        if resp.status_code == 401:
            raise CircleCIAuthError("HTTP Response 401. Check CircleCI API key", 401)
        if resp.status_code != 200:
            raise CircleCIError(f"HTTP Response {resp.status_code}: {_message(resp)}", resp.status_code)
        return resp.json()

    def list_pipelines(self, project_slug: str) -> List[Dict[str, Any]]:
        """First page only; newest pipelines come first."""
        return self._get(f"/project/{project_slug}/pipeline").get("items") or []

    def list_workflows(self, pipeline_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/pipeline/{pipeline_id}/workflow").get("items") or []

    def list_jobs(self, workflow_id: str) -> List[Dict[str, Any]]:
        return self._get(f"/workflow/{workflow_id}/job").get("items") or []

    def list_artifacts(self, project_slug: str, job_number: int) -> List[Dict[str, Any]]:
        return self._get(f"/project/{project_slug}/{job_number}/artifacts").get("items") or []

    def download(self, url: str, destination: str, chunk_size: int = 64 * 1024) -> Path:
        """Stream ``url`` to ``destination``, replacing whatever is there."""
        dest = Path(destination)
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self.session.get(url, stream=True, timeout=self.timeout_s, verify=ca_bundle()) as resp:
            if resp.status_code == 401:
                raise CircleCIAuthError("HTTP Response 401 while downloading artifact", 401)
            if resp.status_code != 200:
                raise CircleCIError(f"Non-success status code while streaming {resp.status_code}", resp.status_code)
            fd, tmp = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
            try:
                with os.fdopen(fd, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=chunk_size):
                        if chunk:
                            fh.write(chunk)
                os.replace(tmp, dest)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        log.info("downloaded %s -> %s", url.rsplit("/", 1)[-1], dest)
        return dest


def _message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:300]
    if isinstance(body, dict):
        return str(body.get("message") or "")[:300]
    return ""
