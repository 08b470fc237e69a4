"""
Enrichment entry point.

enrich() composes the key computer, the result cache, the single-flight gate
and the provider invoker so that one logical request costs at most one
provider call while its cached result is fresh, however many callers ask for
it at once.
"""

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from .cache import CacheEntry, ContactProjectionStore, ResultCache
from .errors import InvalidInputError, ProviderError, ProviderNotFoundError, error_class_of
from .events import ENRICHMENT_COMPLETED, ENRICHMENT_FAILED
from .logger import get_logger
from .metrics import get_metrics
from .normalize import KeyComputer
from .providers.base import Contact, EnrichmentRequest, ProviderInvoker
from .single_flight import SingleFlightGate

SOURCE_CACHE = "cache"
SOURCE_PROVIDER = "provider"

ZERO_COST = Decimal("0.00")


@dataclass(frozen=True)
class EnrichmentResult:
    key: str
    subject_id: str
    provider: str
    contacts: List[Contact] = field(default_factory=list)
    cost: Decimal = ZERO_COST
    source: str = SOURCE_PROVIDER
    found: bool = True
    computed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "subjectId": self.subject_id,
            "provider": self.provider,
            "contacts": [c.to_dict() for c in self.contacts],
            "cost": str(self.cost),
            "source": self.source,
            "found": self.found,
            "computedAt": self.computed_at.isoformat() if self.computed_at else None,
        }


class EnrichmentOrchestrator:
    def __init__(
        self,
        cache: ResultCache,
        invoker: ProviderInvoker,
        ttl_seconds: int = 30 * 24 * 3600,
        gate: Optional[SingleFlightGate] = None,
        key_computer: Optional[KeyComputer] = None,
        emitter=None,
        contacts: Optional[ContactProjectionStore] = None,
        metrics=None,
        logger=None,
        daily_quota: int = 0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.cache = cache
        self.invoker = invoker
        self.ttl_seconds = ttl_seconds
        self.gate = gate or SingleFlightGate()
        self.keys = key_computer or KeyComputer()
        self.emitter = emitter
        self.contacts = contacts
        self.metrics = metrics or get_metrics()
        self.logger = logger or get_logger()
        self.daily_quota = daily_quota
        self.clock = clock
        self._quota_lock = threading.Lock()
        self._quota_day: Optional[date] = None
        self._calls_today = 0

    def enrich(self, request: EnrichmentRequest, notify_failure: bool = False) -> EnrichmentResult:
        """
        Enrich one subject.

        Returns the cached result (source=cache, cost 0.00) while fresh;
        otherwise performs, or joins, the single provider call for the key.
        Provider "not found" answers are cached and returned with found=False.

        Raises:
            InvalidInputError: the subject has no usable address
            ProviderError: classified provider failure (never cached)
        """
        provider = request.provider or self.invoker.name
        if request.provider != provider:
            request = replace(request, provider=provider)
        labels = {"provider": provider}
        started = time.monotonic()
        self.metrics.inc("enrichment_requests_total", labels=labels)
        flight = {"joined": False, "led": False}

        def lead():
            flight["led"] = True
            return self._lead(key, request)

        try:
            key = self.keys.compute(request.key_fields())
            entry = self.cache.lookup(key)
            if entry is not None:
                self.metrics.inc("enrichment_cache_hits_total", labels=labels)
                self.logger.debug("Cache hit", key=key, subject_id=request.subject_id, provider=provider)
                return self._from_cache(entry, request.subject_id)

            flight["joined"] = True
            result, shared = self.gate.do(key, lead)
            if shared:
                self.metrics.inc("enrichment_shared_total", labels=labels)
                self.logger.debug("Joined in-flight provider call", key=key, subject_id=request.subject_id)
            return result
        except Exception as e:
            error_class = error_class_of(e)
            if flight["joined"] and not flight["led"]:
                # The leader already counted this failure
                self.metrics.inc("enrichment_shared_total", labels=labels)
            else:
                self.metrics.inc("enrichment_errors_total", labels={"provider": provider, "error_class": error_class})
            self.logger.warning(
                "Enrichment failed",
                subject_id=request.subject_id,
                provider=provider,
                error_class=error_class,
                error=str(e),
            )
            if notify_failure and isinstance(e, (ProviderError, InvalidInputError)):
                self._emit(
                    ENRICHMENT_FAILED,
                    request.subject_id,
                    {"provider": provider, "errorClass": error_class, "error": str(e)},
                )
            raise
        finally:
            self.metrics.observe("enrichment_latency_seconds", time.monotonic() - started, labels=labels)
            self._update_hit_ratio()

    def _lead(self, key: str, request: EnrichmentRequest) -> EnrichmentResult:
        # A previous leader for this key may have stored a result since our lookup
        entry = self.cache.lookup(key)
        if entry is not None:
            self.metrics.inc("enrichment_cache_hits_total", labels={"provider": request.provider})
            return self._from_cache(entry, request.subject_id)

        self._count_provider_call(request.provider)
        self.logger.info("Calling provider", key=key, subject_id=request.subject_id, provider=request.provider)
        try:
            provider_result = self.invoker.call(request)
        except ProviderNotFoundError as e:
            cost = Decimal(e.cost) if e.cost is not None else ZERO_COST
            entry = self.cache.store(
                key, request.subject_id, request.provider, [], cost, self.ttl_seconds, found=False
            )
            self._record_cost(request.provider, cost)
            self.logger.info("Provider has no match, cached negative result", key=key, subject_id=request.subject_id)
            result = self._from_entry(entry, request.subject_id, SOURCE_PROVIDER)
            self._emit(ENRICHMENT_COMPLETED, request.subject_id, self._event_metadata(result))
            return result

        entry = self.cache.store(
            key,
            request.subject_id,
            request.provider,
            provider_result.contacts,
            provider_result.cost,
            self.ttl_seconds,
            found=True,
        )
        self._record_cost(request.provider, provider_result.cost)
        if self.contacts is not None:
            self.contacts.upsert(request.subject_id, key, request.provider, provider_result.contacts)
        result = self._from_entry(entry, request.subject_id, SOURCE_PROVIDER)
        self._emit(ENRICHMENT_COMPLETED, request.subject_id, self._event_metadata(result))
        return result

    @staticmethod
    def _from_entry(entry: CacheEntry, subject_id: str, source: str) -> EnrichmentResult:
        return EnrichmentResult(
            key=entry.key,
            subject_id=subject_id,
            provider=entry.provider,
            contacts=list(entry.contacts),
            cost=entry.cost if source == SOURCE_PROVIDER else ZERO_COST,
            source=source,
            found=entry.found,
            computed_at=entry.computed_at,
        )

    def _from_cache(self, entry: CacheEntry, subject_id: str) -> EnrichmentResult:
        return self._from_entry(entry, subject_id, SOURCE_CACHE)

    @staticmethod
    def _event_metadata(result: EnrichmentResult) -> Dict[str, Any]:
        return {
            "key": result.key,
            "provider": result.provider,
            "found": result.found,
            "contactCount": len(result.contacts),
            "cost": str(result.cost),
        }

    def _emit(self, event_type: str, subject_id: str, metadata: Dict[str, Any]):
        if self.emitter is None:
            return
        try:
            self.emitter.emit(event_type, subject_id=subject_id, metadata=metadata)
        except Exception as e:
            # The provider call is already paid for and cached; surface the lost event in the log
            self.logger.error(
                "Failed to emit event",
                event_type=event_type,
                subject_id=subject_id,
                error=f"{type(e).__name__}: {e}",
            )

    def _record_cost(self, provider: str, cost: Decimal):
        self.metrics.observe("enrichment_cost_usd", float(cost), labels={"provider": provider})

    def _count_provider_call(self, provider: str):
        labels = {"provider": provider}
        self.metrics.inc("enrichment_provider_calls_total", labels=labels)
        today = self.clock().date()
        with self._quota_lock:
            if self._quota_day != today:
                self._quota_day = today
                self._calls_today = 0
            self._calls_today += 1
            calls = self._calls_today
        self.metrics.set("provider_calls_today", calls, labels=labels)
        if self.daily_quota > 0:
            self.metrics.set("provider_quota_usage", calls / self.daily_quota, labels=labels)

    def _update_hit_ratio(self):
        requests_total = self.metrics.total("enrichment_requests_total")
        if requests_total:
            hits = self.metrics.total("enrichment_cache_hits_total") + self.metrics.total("enrichment_shared_total")
            self.metrics.set("enrichment_cache_hit_ratio", hits / requests_total)
