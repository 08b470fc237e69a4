"""Contract shared by every contact-lookup provider."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from ..schema import canonical_fields


@dataclass(frozen=True)
class EnrichmentRequest:
    """A subject to enrich. ``provider`` selects the invoker and is part of the key."""

    subject_id: str
    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    first_name: str = ""
    last_name: str = ""
    provider: str = ""

    @classmethod
    def from_record(cls, record: Mapping[str, Any], provider: str = "") -> "EnrichmentRequest":
        fields = canonical_fields(record)
        subject_id = record.get("subject_id") or record.get("subjectId") or record.get("id") or record.get("lead_id")
        return cls(
            subject_id=str(subject_id) if subject_id is not None else "",
            street=str(fields.get("street") or ""),
            city=str(fields.get("city") or ""),
            state=str(fields.get("state") or ""),
            zip=str(fields.get("zip") or ""),
            first_name=str(fields.get("first_name") or ""),
            last_name=str(fields.get("last_name") or ""),
            provider=str(fields.get("provider") or provider or ""),
        )

    def key_fields(self) -> Dict[str, str]:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip": self.zip,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "provider": self.provider,
        }


@dataclass(frozen=True)
class Contact:
    kind: str  # phone|email
    value: str
    type: Optional[str] = None
    confidence: float = 0.0
    dnc: bool = False
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Contact":
        return cls(
            kind=data.get("kind", "phone"),
            value=str(data.get("value", "")),
            type=data.get("type"),
            confidence=float(data.get("confidence") or 0.0),
            dnc=bool(data.get("dnc", False)),
            source=data.get("source"),
        )


@dataclass
class ProviderResult:
    contacts: List[Contact] = field(default_factory=list)
    cost: Decimal = Decimal("0")
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderInvoker(ABC):
    """
    Performs one billed lookup.

    Implementations return a ProviderResult or raise one of the ProviderError
    variants from ``leadenrich.errors``; they never return partial failures.
    """

    name: str = "provider"
    version: str = "v1"

    @abstractmethod
    def call(self, request: EnrichmentRequest) -> ProviderResult:
        raise NotImplementedError
