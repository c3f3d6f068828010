# checkin_guard/utils/fingerprint.py
"""
Duplicate-person fingerprints.

A fingerprint is a SHA-256 digest over normalised guest identity fields. Equal
fingerprints mean "probably the same person" for duplicate detection; they are
advisory, never proof of identity.
"""
import hashlib
import re
from typing import Dict, List, Optional, Tuple

DETECTION_MODES = ("strict", "moderate", "lenient")

_FIELD_SEPARATOR = "\x1f"
_WHITESPACE = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")


def normalize_name(name: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", (name or "").strip()).lower()


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def normalize_phone(phone: Optional[str]) -> str:
    return _NON_DIGITS.sub("", phone or "")


def _digest(fields: List[Tuple[str, str]]) -> Optional[str]:
    parts = [f"{label}={value}" for label, value in fields if value]
    if not parts:
        return None
    return hashlib.sha256(_FIELD_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


def compute_fingerprint(
    name: Optional[str],
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Optional[str]:
    """Digest over the non-empty fields in fixed order (name, email, phone).

    Returns None when every field is empty, since there is nothing to compare.
    """
    return _digest([
        ("name", normalize_name(name)),
        ("email", normalize_email(email)),
        ("phone", normalize_phone(phone)),
    ])


def compute_identity_keys(
    name: Optional[str],
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> Dict[str, List[str]]:
    """Match keys for every duplicate detection mode.

    strict   -- one key over name, email and phone
    moderate -- name+email and name+phone; two invites match if any key is shared
    lenient  -- name only

    Without a name (or, for moderate, without any contact field) the mode
    falls back to the strict key.
    """
    n, e, p = normalize_name(name), normalize_email(email), normalize_phone(phone)
    strict = compute_fingerprint(name, email, phone)
    keys: Dict[str, List[str]] = {mode: [] for mode in DETECTION_MODES}
    if strict is None:
        return keys

    keys["strict"] = [strict]
    if not n:
        keys["moderate"] = [strict]
        keys["lenient"] = [strict]
        return keys

    moderate = []
    if e:
        moderate.append(_digest([("name", n), ("email", e)]))
    if p:
        moderate.append(_digest([("name", n), ("phone", p)]))
    keys["moderate"] = moderate or [strict]
    keys["lenient"] = [_digest([("name", n)])]
    return keys


def identity_fields(name: Optional[str], email: Optional[str], phone: Optional[str]) -> dict:
    """Derived fields to store alongside any identity change."""
    return {
        "duplicate_fingerprint": compute_fingerprint(name, email, phone),
        "identity_keys": compute_identity_keys(name, email, phone),
    }
