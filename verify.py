import hashlib
import hmac
from typing import Iterable, Optional

_ALGORITHMS = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}


def hmac_signature(secret: str, body: bytes, algo: str = "sha256") -> str:
    algo = algo.lower()
    return f"{algo}=" + hmac.new(secret.encode("utf-8"), body, _ALGORITHMS[algo]).hexdigest()


def verify_signature(signature: Optional[str], body: bytes, secrets: Iterable[str]) -> bool:
    """Check an ``<algorithm>=<hexdigest>`` header against the raw body.

    Any configured secret may match, so secrets can be rotated without
    dropping deliveries. A missing, malformed or unsupported header never
    verifies.
    """
    if not signature or "=" not in signature:
        return False
    algo, _, digest = signature.partition("=")
    algo = algo.strip().lower()
    if algo not in _ALGORITHMS or not digest:
        return False
    provided = f"{algo}={digest.strip().lower()}"
    return any(
        hmac.compare_digest(provided, hmac_signature(secret, body, algo))
        for secret in secrets
        if secret
    )
