"""Post a signed webhook delivery to a locally running service.

  python scripts/send_test_delivery.py                   # ping
  python scripts/send_test_delivery.py check_suite <sha> # register a check run for <sha>
"""
import json
import sys
import uuid

import requests
from dotenv import load_dotenv

from config import Settings
from verify import hmac_signature

load_dotenv()
settings = Settings.from_env()
if not settings.webhook_secrets:
    sys.exit("GITHUB_WEBHOOK_SECRET is not set")

url = "http://127.0.0.1:3000/webhook"
event = sys.argv[1] if len(sys.argv) > 1 else "ping"
payload = {"zen": "Keep it logically awesome."}
if event == "check_suite":
    payload = {
        "action": "requested",
        "check_suite": {"head_sha": sys.argv[2]},
        "repository": {"name": settings.repository, "full_name": f"happy-health/{settings.repository}"},
    }
body = json.dumps(payload, separators=(",", ":")).encode()

headers = {
    "Content-Type": "application/json",
    "X-GitHub-Event": event,
    "X-GitHub-Delivery": str(uuid.uuid4()),
    "X-Hub-Signature-256": hmac_signature(settings.webhook_secrets[0], body),
}
r = requests.post(url, data=body, headers=headers, timeout=10)
print(r.status_code, r.text)
