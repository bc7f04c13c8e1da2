"""OpenPhone webhook signature verification.

OpenPhone signs deliveries with HMAC-SHA256 and sends the base64 digest in an
``openphone-signature`` header of the form::

    hmac;1;<timestamp>;<base64 digest>

where the signed payload is ``"<timestamp>.<body>"``.  Older integrations
and proxies send ``sha256=<digest>``, ``v1=<digest>`` or a bare digest over
the body alone, or simply echo the shared secret; all of those are accepted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = (
    "openphone-signature",
    "x-openphone-signature",
    "x-openphone-signature-sha256",
    "x-quo-signature",
)

_SHA256_RE = re.compile(r"sha256=(.+)", re.IGNORECASE)
_VERSIONED_RE = re.compile(r"v\d=([A-Za-z0-9+/=]+)")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CanonicalBody:
    text: str
    parsed: Any = None
    is_json: bool = False


@dataclass(frozen=True)
class SignatureEntry:
    signature: str | None
    timestamp: str | None = None


def canonicalize_body(raw: bytes | str) -> CanonicalBody:
    """Re-serialize a JSON body compactly; non-JSON bodies are stripped."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text:
        return CanonicalBody(text="")
    try:
        parsed = json.loads(text)
    except ValueError:
        return CanonicalBody(text=text.strip())
    return CanonicalBody(
        text=json.dumps(parsed, separators=(",", ":"), ensure_ascii=False),
        parsed=parsed,
        is_json=True,
    )


def _strip_quotes(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip().strip("'\"").strip()
    return stripped or None


def parse_signature_header(value: str) -> list[SignatureEntry]:
    entries: list[SignatureEntry] = []
    for fragment in (part.strip() for part in value.split(",")):
        if not fragment:
            continue
        if ";" in fragment:
            parts = fragment.split(";")
            parts += [""] * (4 - len(parts))
            entries.append(
                SignatureEntry(signature=_strip_quotes(parts[3]), timestamp=_strip_quotes(parts[2]))
            )
            continue
        match = _SHA256_RE.search(fragment) or _VERSIONED_RE.search(fragment)
        entries.append(SignatureEntry(signature=_strip_quotes(match.group(1) if match else fragment)))
    return entries


def _constant_time_equals(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def _bearer_token(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    token = value.strip()
    if token.lower().startswith("bearer "):
        return token[7:].strip()
    return token


def signing_key_candidates(secret: str) -> list[bytes]:
    """The base64-decoded secret first (when it looks like base64), then raw UTF-8."""
    trimmed = secret.strip()
    if not trimmed:
        return []
    candidates = [trimmed.encode("utf-8")]
    normalized = _WHITESPACE_RE.sub("", trimmed)
    if _BASE64_RE.fullmatch(normalized) and len(normalized) % 4 == 0:
        try:
            decoded = base64.b64decode(normalized, validate=True)
        except (binascii.Error, ValueError):
            decoded = b""
        if decoded:
            candidates.insert(0, decoded)
    return candidates


def _digests(data: str, keys: list[bytes]) -> list[str]:
    if not data:
        return []
    payload = data.encode("utf-8")
    return [
        base64.b64encode(hmac.new(key, payload, hashlib.sha256).digest()).decode("ascii")
        for key in keys
    ]


def verify_webhook_signature(
    headers: Mapping[str, str],
    canonical_body: str,
    secret: str | None,
) -> bool:
    """Return True when the request is authentic (or no secret is configured)."""
    if not secret:
        return True

    bearer = _bearer_token(headers.get("authorization"))
    if bearer and _constant_time_equals(bearer, secret):
        return True

    header_values = [value for name in SIGNATURE_HEADERS if (value := headers.get(name))]
    if not header_values:
        logger.warning("OpenPhone webhook missing signature headers")
        return False

    if any(_constant_time_equals(value, secret) for value in header_values):
        return True

    keys = signing_key_candidates(secret)
    if not keys:
        logger.warning("Unable to derive signing key for OpenPhone webhook")
        return False

    body_digests = _digests(canonical_body, keys)
    for value in header_values:
        for entry in parse_signature_header(value):
            if not entry.signature:
                continue
            if entry.timestamp:
                signed = f"{entry.timestamp}.{canonical_body}"
                if any(_constant_time_equals(entry.signature, d) for d in _digests(signed, keys)):
                    return True
            if any(_constant_time_equals(entry.signature, d) for d in body_digests):
                return True

    return False
