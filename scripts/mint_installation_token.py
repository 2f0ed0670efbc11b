"""Mint an installation token with the webhook's own settings (for poking the Checks API by hand)."""
import json
import sys

from dotenv import load_dotenv

from config import Settings
from github import AppAuthenticator, AuthenticationError

load_dotenv(dotenv_path=".env")

settings = Settings.from_env()
if not settings.installation_id:
    sys.exit("GITHUB_INSTALLATION_ID is not set")

auth = AppAuthenticator(settings.app_id, settings.private_key, settings.github_api, settings.http_timeout_s)
try:
    token = auth.installation_token(settings.installation_id)
except AuthenticationError as e:
    sys.exit(f"token acquisition failed: {e}")

print(json.dumps({"token": token.token, "expires_at": token.expires_at}, indent=2, default=str))
