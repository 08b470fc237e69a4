"""Skip-trace provider reached over HTTP."""

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import requests

from ..errors import (
    InvalidInputError,
    ProviderAuthError,
    ProviderNotFoundError,
    ProviderRateLimitError,
    ProviderTransientError,
)
from ..logger import get_logger
from ..retry import RetryError, exponential_backoff, parse_retry_after, should_retry_http_status
from .base import Contact, EnrichmentRequest, ProviderInvoker, ProviderResult

PHONE_CONFIDENCE = 0.7
EMAIL_CONFIDENCE = 0.6


class HttpProviderInvoker(ProviderInvoker):
    """
    POSTs one subject to a skip-trace endpoint and classifies the outcome.

    ``version`` switches the request body and response parsing:
      v1: flat body, response ``{"phones": [...], "emails": [...]}``
      v2: batch body, response ``{"results": {"persons": [...]}}``

    Only connect timeouts are retried here: the request never reached the
    provider, so it was not billed. Everything else is classified and raised.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        name: str = "batchdata",
        version: str = "v1",
        cost_per_call: Decimal = Decimal("0.25"),
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
        connect_retries: int = 2,
        sleep: Optional[Callable[[float], None]] = None,
        logger=None,
    ):
        if not base_url:
            raise ValueError("Provider base_url is required")
        self.base_url = base_url
        self.api_key = api_key
        self.name = name
        self.version = version
        self.cost_per_call = Decimal(cost_per_call)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or get_logger()
        retry_kwargs = {"sleep": sleep} if sleep is not None else {}
        self._post = exponential_backoff(
            max_retries=connect_retries,
            base_delay=0.5,
            exceptions=(requests.exceptions.ConnectTimeout,),
            **retry_kwargs,
        )(self._post_once)

    def _post_once(self, body: Dict[str, Any]):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return self.session.post(self.base_url, json=body, headers=headers, timeout=self.timeout)

    def build_body(self, request: EnrichmentRequest) -> Dict[str, Any]:
        if self.version == "v2":
            return {
                "requests": [
                    {
                        "propertyAddress": {
                            "street": request.street,
                            "city": request.city,
                            "state": request.state,
                            "zip": request.zip,
                        },
                        "name": {"first": request.first_name, "last": request.last_name},
                    }
                ]
            }
        return {
            "address": request.street,
            "city": request.city,
            "state": request.state,
            "zipCode": request.zip,
            "firstName": request.first_name,
            "lastName": request.last_name,
        }

    def call(self, request: EnrichmentRequest) -> ProviderResult:
        """Perform the lookup. Raises a ProviderError variant on failure."""
        try:
            resp = self._post(self.build_body(request))
        except RetryError as e:
            self.logger.warning(f"{self.name} unreachable", subject_id=request.subject_id, error=str(e))
            raise ProviderTransientError(f"{self.name} unreachable: {e}", provider=self.name)
        except requests.exceptions.Timeout:
            self.logger.warning(f"{self.name} request timed out", subject_id=request.subject_id)
            raise ProviderTransientError(f"{self.name} request timed out", provider=self.name)
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"{self.name} request error", subject_id=request.subject_id, error=str(e))
            raise ProviderTransientError(f"{self.name} request error: {e}", provider=self.name)

        status = resp.status_code
        if status in (401, 403):
            raise ProviderAuthError(f"{self.name} rejected credentials ({status})", provider=self.name, status_code=status)
        if status == 404:
            raise ProviderNotFoundError(f"{self.name} has no match", provider=self.name, cost=self.cost_per_call)
        if status in (400, 422):
            raise InvalidInputError(f"{self.name} rejected subject ({status}): {resp.text[:200]}")
        if status == 429:
            raise ProviderRateLimitError(
                f"{self.name} rate limited",
                provider=self.name,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        if should_retry_http_status(status) or status >= 500:
            raise ProviderTransientError(f"{self.name} server error ({status})", provider=self.name, status_code=status)
        if status >= 300:
            raise ProviderTransientError(f"{self.name} unexpected status ({status})", provider=self.name, status_code=status)

        try:
            data = resp.json()
        except ValueError:
            raise ProviderTransientError(f"{self.name} returned malformed JSON", provider=self.name, status_code=status)

        cost = self._cost(data)
        contacts = self.parse_contacts(data)
        if not contacts:
            raise ProviderNotFoundError(f"{self.name} returned no contacts", provider=self.name, status_code=status, cost=cost)
        return ProviderResult(contacts=contacts, cost=cost, raw=data if isinstance(data, dict) else {})

    def _cost(self, data: Any) -> Decimal:
        if isinstance(data, dict) and data.get("cost") is not None:
            try:
                return Decimal(str(data["cost"]))
            except InvalidOperation:
                pass
        return self.cost_per_call

    def parse_contacts(self, data: Any) -> List[Contact]:
        if not isinstance(data, dict):
            return []
        if self.version == "v2":
            persons = ((data.get("results") or {}).get("persons")) or []
            phones = [p for person in persons for p in (person.get("phoneNumbers") or [])]
            emails = [e for person in persons for e in (person.get("emails") or [])]
        else:
            phones = data.get("phones") or []
            emails = data.get("emails") or []

        contacts: List[Contact] = []
        seen = set()
        for p in phones:
            value = (p.get("phone_number") or p.get("number") or p.get("value")) if isinstance(p, dict) else p
            if not value or ("phone", str(value)) in seen:
                continue
            seen.add(("phone", str(value)))
            contacts.append(
                Contact(
                    kind="phone",
                    value=str(value),
                    type=(p.get("phone_type") or p.get("type")) if isinstance(p, dict) else None,
                    confidence=_confidence(p, PHONE_CONFIDENCE),
                    dnc=bool(p.get("dnc_flag") or p.get("dnc")) if isinstance(p, dict) else False,
                    source=self.name,
                )
            )
        for e in emails:
            value = (e.get("email") or e.get("value")) if isinstance(e, dict) else e
            if not value or ("email", str(value).lower()) in seen:
                continue
            seen.add(("email", str(value).lower()))
            contacts.append(
                Contact(
                    kind="email",
                    value=str(value),
                    confidence=_confidence(e, EMAIL_CONFIDENCE),
                    dnc=bool(e.get("dnc_flag") or e.get("dnc")) if isinstance(e, dict) else False,
                    source=self.name,
                )
            )
        return contacts


def _confidence(item: Any, default: float) -> float:
    if isinstance(item, dict) and isinstance(item.get("confidence"), (int, float)):
        return float(item["confidence"])
    return default
