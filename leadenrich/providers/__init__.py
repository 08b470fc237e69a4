from .base import Contact, EnrichmentRequest, ProviderInvoker, ProviderResult
from .http import HttpProviderInvoker

__all__ = [
    "Contact",
    "EnrichmentRequest",
    "HttpProviderInvoker",
    "ProviderInvoker",
    "ProviderResult",
]
