"""HMAC-SHA256 verification of provider webhook signatures.

The provider sends ``x-signature: ts=<unix-ms>,v1=<hex-digest>`` and
``x-request-id``.  The digest is computed over a *manifest*: an ordered
list of ``key:value`` segments joined by ``;`` with a trailing ``;``,
where a segment is only present when its value is non-empty::

    id:<data.id>;request-id:<x-request-id>;ts:<ts>;       (canonical)
    body:<raw body>;request-id:<x-request-id>;ts:<ts>;    (legacy)

A signature is accepted when it matches either manifest shape.  Every
function here is pure and safe to call concurrently.
"""

from __future__ import annotations

import hashlib
import hmac
import time


def parse_signature_header(header: str) -> tuple[str, str] | None:
    """Extract ``(ts, v1)`` from an ``x-signature`` header.

    Parts without ``=`` are skipped; keys and values are stripped.  Returns
    ``None`` when either field is missing or empty.
    """
    ts = ""
    digest = ""
    for part in header.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            digest = value.strip()
    if not ts or not digest:
        return None
    return ts, digest


def build_manifest(segments: list[tuple[str, str]]) -> str:
    """Join the non-empty ``(key, value)`` segments into a manifest string."""
    return ";".join(f"{key}:{value}" for key, value in segments if value) + ";"


def candidate_manifests(
    *,
    ts: str,
    request_id: str,
    raw_body: str,
    canonical_id: str,
) -> list[str]:
    """Return the canonical and legacy manifests for one delivery."""
    return [
        build_manifest([("id", canonical_id), ("request-id", request_id), ("ts", ts)]),
        build_manifest([("body", raw_body), ("request-id", request_id), ("ts", ts)]),
    ]


def sign_manifest(manifest: str, secret: str) -> str:
    """HMAC-SHA256 of *manifest* under *secret* as lowercase hex."""
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def _digests_equal(expected_hex: str, provided_hex: str) -> bool:
    """Constant-time comparison of two hex digests on their decoded bytes."""
    try:
        expected = bytes.fromhex(expected_hex)
        provided = bytes.fromhex(provided_hex)
    except ValueError:
        return False
    return hmac.compare_digest(expected, provided)


def verify_signature(
    signature_header: str,
    request_id: str,
    raw_body: bytes | str,
    canonical_id: str,
    secret: str,
) -> bool:
    """Return ``True`` if *signature_header* authenticates the delivery.

    Parameters
    ----------
    signature_header:
        Value of the ``x-signature`` header.
    request_id:
        Value of the ``x-request-id`` header (may be empty).
    raw_body:
        The request body exactly as received.
    canonical_id:
        The notification's resource id for the canonical manifest, or ``""``.
    secret:
        The receiver's shared secret.

    Returns
    -------
    bool
        ``True`` when any candidate manifest's HMAC matches the ``v1``
        digest.  Malformed headers or hex yield ``False``.
    """
    parsed = parse_signature_header(signature_header)
    if parsed is None:
        return False
    ts, provided = parsed

    body = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
    matched = False
    for manifest in candidate_manifests(ts=ts, request_id=request_id, raw_body=body, canonical_id=canonical_id):
        # No early exit: every candidate is evaluated.
        if _digests_equal(sign_manifest(manifest, secret), provided):
            matched = True
    return matched


def build_signature_header(
    secret: str,
    *,
    request_id: str = "",
    raw_body: str = "",
    canonical_id: str = "",
    ts: str | None = None,
) -> str:
    """Build an ``x-signature`` value the verifier accepts.

    Signs the canonical manifest when *canonical_id* is given, otherwise
    the legacy body manifest.
    """
    ts = ts or str(int(time.time() * 1000))
    if canonical_id:
        manifest = build_manifest([("id", canonical_id), ("request-id", request_id), ("ts", ts)])
    else:
        manifest = build_manifest([("body", raw_body), ("request-id", request_id), ("ts", ts)])
    return f"ts={ts},v1={sign_manifest(manifest, secret)}"
