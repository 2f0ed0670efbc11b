from dotenv import load_dotenv
load_dotenv()  # ensures GITHUB_* / CIRCLECI_* env from a local .env is visible to pytest
import warnings

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

warnings.filterwarnings(
    "ignore",
    message=r"on_event is deprecated, use lifespan event handlers instead\.",
    category=DeprecationWarning,
    module=r"fastapi\..*",
)


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_key) -> str:
    return rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


class FakeChecksAPI:
    """Records check-run calls instead of talking to GitHub."""

    def __init__(self, first_id: int = 1000, failures=None):
        self.next_id = first_id
        self.created = []
        self.updates = []
        # status -> how many PATCHes with that status fail before one goes through
        self.failures = dict(failures or {})

    def create_check_run(self, repo_full_name, name, head_sha):
        self.next_id += 1
        self.created.append((repo_full_name, name, head_sha, self.next_id))
        return self.next_id

    def update_check_run(self, repo_full_name, check_run_id, payload):
        status = payload.get("status")
        if self.failures.get(status):
            self.failures[status] -= 1
            raise requests.HTTPError("502 Server Error: Bad Gateway")
        self.updates.append((repo_full_name, check_run_id, payload))
        return {"id": check_run_id}


@pytest.fixture
def checks_api():
    return FakeChecksAPI()
