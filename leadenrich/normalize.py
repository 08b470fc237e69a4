import hashlib
import re
from typing import Any, Dict, Mapping

from .errors import InvalidInputError
from .schema import KEY_FIELDS, canonical_fields, validate_subject

KEY_SEPARATOR = "\x1f"

_PUNCT = re.compile(r"[^\w\s]|_", re.UNICODE)


def normalize_text(s: Any) -> str:
    if s is None:
        return ""
    text = _PUNCT.sub(" ", str(s).lower())
    return " ".join(text.split())


def normalize_zip(zip_code: Any) -> str:
    # 60601-1234 and 60601 describe the same parcel for lookup purposes
    z = normalize_text(zip_code).replace(" ", "")
    return z[:5] if len(z) > 5 and z[:5].isdigit() else z


def canonicalize(fields: Mapping[str, Any]) -> Dict[str, str]:
    canon = canonical_fields(fields)
    out = {name: normalize_text(canon.get(name)) for name in KEY_FIELDS}
    out["zip"] = normalize_zip(canon.get("zip"))
    return out


class KeyComputer:
    """
    Derives the idempotency key for a logical enrichment request.

    Fields are canonicalized (lowercase, punctuation stripped, whitespace
    collapsed), rendered as ``name=value`` in sorted field-name order, joined
    with a unit separator and hashed with SHA-256.
    """

    def __init__(self, separator: str = KEY_SEPARATOR):
        self.separator = separator

    def canonical_string(self, fields: Mapping[str, Any]) -> str:
        errors = validate_subject(fields)
        if errors:
            raise InvalidInputError("; ".join(errors), errors=errors)
        canon = canonicalize(fields)
        if not any(canon[f] for f in ("street", "city", "state", "zip")):
            raise InvalidInputError("All address fields are empty after normalization")
        return self.separator.join(f"{name}={canon[name]}" for name in sorted(canon))

    def compute(self, fields: Mapping[str, Any]) -> str:
        return hashlib.sha256(self.canonical_string(fields).encode("utf-8")).hexdigest()


def compute_key(fields: Mapping[str, Any]) -> str:
    return KeyComputer().compute(fields)
