"""Inbound SNS envelope handling: topic allowlist, signature check, confirmation."""
from __future__ import annotations

import base64
import json
import subprocess
import tempfile
from typing import Any, Iterable
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from dripline.utils.logger import logger

_NOTIFICATION_FIELDS = ("Message", "MessageId", "Subject", "Timestamp", "TopicArn", "Type")
_SUBSCRIPTION_FIELDS = ("Message", "MessageId", "SubscribeURL", "Timestamp", "Token", "TopicArn", "Type")
_DIGESTS = {"1": "-sha1", "2": "-sha256"}


class SnsEnvelopeError(ValueError):
    """The SNS envelope or the SES message inside it cannot be used."""


def topic_allowed(topic_arn: str | None, allowed: Iterable[str]) -> bool:
    """An empty allowlist accepts every topic."""

    allowed = list(allowed)
    if not allowed:
        return True
    return topic_arn in allowed


def _is_sns_https(url: str) -> bool:
    parsed = urlparse(url)
    host = parsed.hostname or ""
    return parsed.scheme == "https" and (
        host == "sns.amazonaws.com" or (host.startswith("sns.") and host.endswith(".amazonaws.com"))
    )


def is_allowed_cert_url(cert_url: str) -> tuple[bool, str]:
    parsed = urlparse(cert_url)
    if parsed.scheme != "https":
        return False, "SigningCertURL must use https"
    if not parsed.hostname:
        return False, "SigningCertURL missing hostname"
    if not _is_sns_https(cert_url):
        return False, "SigningCertURL hostname is not allowed"
    if not parsed.path.startswith("/SimpleNotificationService-"):
        return False, "SigningCertURL path is not allowed"
    return True, "ok"


def string_to_sign(payload: dict[str, Any]) -> str:
    fields = _NOTIFICATION_FIELDS if payload.get("Type") == "Notification" else _SUBSCRIPTION_FIELDS
    lines: list[str] = []
    for name in fields:
        if payload.get(name) is not None:
            lines.extend((name, str(payload[name])))
    return "\n".join(lines) + "\n"


def _fetch_url(url: str, timeout_seconds: int) -> bytes:
    with urlopen(Request(url, method="GET"), timeout=timeout_seconds) as response:
        return response.read()


def _run_openssl(args: list[str], input_bytes: bytes | None, timeout_seconds: int) -> subprocess.CompletedProcess:
    return subprocess.run(args, input=input_bytes, capture_output=True, check=False, timeout=timeout_seconds)


def verify_sns_signature(payload: dict[str, Any], timeout_seconds: int) -> tuple[bool, str]:
    """Check the envelope signature against the certificate SNS points at."""

    digest = _DIGESTS.get(str(payload.get("SignatureVersion")))
    if digest is None:
        return False, "Unsupported SignatureVersion"
    signature_b64 = payload.get("Signature")
    cert_url = payload.get("SigningCertURL")
    if not signature_b64 or not cert_url:
        return False, "Missing Signature or SigningCertURL"
    allowed, reason = is_allowed_cert_url(cert_url)
    if not allowed:
        return False, reason

    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except ValueError:
        return False, "Invalid Signature encoding"
    try:
        cert_pem = _fetch_url(cert_url, timeout_seconds)
    except OSError as exc:  # pragma: no cover - network errors
        logger.warning("Failed to fetch SNS cert %s: %s", cert_url, exc)
        return False, "Failed to fetch SigningCertURL"

    try:
        with tempfile.NamedTemporaryFile() as pubkey_file, tempfile.NamedTemporaryFile() as data_file, \
                tempfile.NamedTemporaryFile() as sig_file:
            pubkey = _run_openssl(["openssl", "x509", "-pubkey", "-noout"], cert_pem, timeout_seconds)
            if pubkey.returncode != 0:
                return False, "Failed to extract public key"
            for handle, content in (
                (pubkey_file, pubkey.stdout),
                (data_file, string_to_sign(payload).encode("utf-8")),
                (sig_file, signature),
            ):
                handle.write(content)
                handle.flush()
            verified = _run_openssl(
                ["openssl", "dgst", digest, "-verify", pubkey_file.name, "-signature", sig_file.name, data_file.name],
                None,
                timeout_seconds,
            )
    except FileNotFoundError:
        return False, "openssl is not available for signature verification"
    except (OSError, subprocess.SubprocessError) as exc:
        logger.warning("SNS signature verification error: %s", exc)
        return False, "Signature verification error"

    if verified.returncode != 0:
        return False, "Signature verification failed"
    return True, "ok"


def confirm_subscription(subscribe_url: str, timeout_seconds: int) -> bool:
    if not _is_sns_https(subscribe_url):
        logger.warning("Refusing to confirm SNS subscription at %s", subscribe_url)
        return False
    try:
        _fetch_url(subscribe_url, timeout_seconds)
    except OSError as exc:  # pragma: no cover - network errors
        logger.warning("Failed to confirm SNS subscription: %s", exc)
        return False
    return True


def parse_ses_message(payload: dict[str, Any]) -> dict[str, Any]:
    """Decode the SES event JSON carried in a Notification's ``Message``."""

    body = payload.get("Message")
    if not body:
        raise SnsEnvelopeError("Missing SNS Message body")
    try:
        message = json.loads(body)
    except json.JSONDecodeError as exc:
        raise SnsEnvelopeError("Invalid SNS Message JSON") from exc
    if not isinstance(message, dict):
        raise SnsEnvelopeError("SNS Message is not a JSON object")
    return message


def dumps_payload(payload: dict[str, Any], max_bytes: int = 32768) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True)[:max_bytes]
