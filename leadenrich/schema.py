from typing import Any, Dict, List, Mapping

ADDRESS_FIELDS = ["street", "city", "state", "zip"]
NAME_FIELDS = ["first_name", "last_name"]
KEY_FIELDS = ADDRESS_FIELDS + NAME_FIELDS + ["provider"]

# Accepted spellings for each canonical field.
FIELD_ALIASES = {
    "street": ("street", "address", "street_address", "streetAddress"),
    "city": ("city",),
    "state": ("state",),
    "zip": ("zip", "zip_code", "zipCode", "zipcode", "postal_code"),
    "first_name": ("first_name", "firstName", "owner_first_name"),
    "last_name": ("last_name", "lastName", "owner_last_name"),
    "provider": ("provider",),
}


def _is_non_empty_str(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def canonical_fields(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Map aliased and differently-cased field names onto canonical names."""
    lowered = {str(k).strip().lower(): v for k, v in data.items()}
    out: Dict[str, Any] = {}
    for name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = lowered.get(alias.lower())
            if value is not None:
                out[name] = value
                break
    return out


def validate_subject(data: Mapping[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    """
    errors: List[str] = []
    fields = canonical_fields(data)

    for f, v in fields.items():
        if v is not None and not isinstance(v, (str, int)):
            errors.append(f"Field '{f}' must be a string if provided")

    if not any(_is_non_empty_str(str(fields.get(f, "") or "")) for f in ADDRESS_FIELDS):
        errors.append("At least one address field (street, city, state, zip) is required")

    return errors
