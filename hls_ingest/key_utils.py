# hls_ingest/key_utils.py
"""
Identity derivation: source URL -> filesystem and object-key safe string.
"""
from __future__ import annotations

import hashlib
import logging
import re

logger = logging.getLogger(__name__)

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")
_EXTENSION_RE = re.compile(r"\.[^/.]+$")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9]")

MAX_IDENTITY_LEN = 200


def md5_8(s: str) -> str:
    return hashlib.md5(s.encode("utf-8", "surrogatepass")).hexdigest()[:8]  # noqa: S324


def sanitize_key(url: str) -> str:
    """Strip the scheme, strip the final extension, replace anything outside [A-Za-z0-9] with '_'.

    >>> sanitize_key("https://v.redd.it/abc123.mp4")
    'v_redd_it_abc123'
    """
    stripped = _SCHEME_RE.sub("", url, count=1)
    stripped = _EXTENSION_RE.sub("", stripped, count=1)
    return _UNSAFE_RE.sub("_", stripped)


def derive_identity(url: object, mode: str = "sanitized") -> str:
    """
    Deterministic identity for a source URL. Never raises.

    mode="sanitized" returns sanitize_key(url) as is; two URLs that differ only
    in scheme or in non-alphanumeric characters collide. mode="hashed" appends
    md5_8 of the full URL so distinct URLs get distinct identities.
    Non-string input, or input that sanitizes to nothing useful, degrades to
    "item_<md5_8>".
    """
    text = url if isinstance(url, str) else str(url)
    key = sanitize_key(text.strip()) if isinstance(url, str) else ""
    if not key.strip("_"):
        logger.warning(f"Could not derive a meaningful identity from {text!r}, using placeholder")
        return f"item_{md5_8(text)}"
    if mode == "hashed":
        key = f"{key}_{md5_8(text)}"
    if len(key) > MAX_IDENTITY_LEN:
        key = f"{key[:MAX_IDENTITY_LEN - 9]}_{md5_8(text)}"
    return key
