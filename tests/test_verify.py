import hashlib
import hmac

import pytest

from verify import hmac_signature, verify_signature

BODY = b'{"action":"created","check_run":{"head_sha":"abc1234"}}'


def _sign(secret: str, body: bytes, algo: str = "sha256") -> str:
    h = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}[algo]
    return f"{algo}=" + hmac.new(secret.encode(), body, h).hexdigest()


@pytest.mark.parametrize("algo", ["sha256", "sha1"])
def test_matching_signature_is_accepted(algo):
    assert verify_signature(_sign("s3cret", BODY, algo), BODY, ["s3cret"])


@pytest.mark.parametrize("header", [
    None,
    "",
    "sha256",
    "sha256=",
    "md5=" + hashlib.md5(BODY).hexdigest(),
    _sign("wrong", BODY),
    _sign("s3cret", BODY + b" "),
])
def test_bad_signatures_are_rejected(header):
    assert not verify_signature(header, BODY, ["s3cret"])


def test_any_configured_secret_may_match():
    assert verify_signature(_sign("new", BODY), BODY, ["old", "new"])
    assert not verify_signature(_sign("new", BODY), BODY, [])


def test_hex_case_and_prefix_case_are_normalized():
    sig = _sign("s3cret", BODY)
    algo, digest = sig.split("=", 1)
    assert verify_signature(f"{algo.upper()}={digest.upper()}", BODY, ["s3cret"])


def test_hmac_signature_matches_github_format():
    assert hmac_signature("s3cret", BODY) == _sign("s3cret", BODY)
