"""
Service discovery.

``DiscoveryCache`` is a time-bound cache keyed by the full normalized query.
``RegistryClient`` fetches service descriptors from a registry over HTTP and
goes through the cache for every listing call.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import httpx

from .errors import DiscoveryError, ValidationError
from .money import NATIVE_TOKEN, parse_amount

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_URL = "https://registry.x402.org"
DEFAULT_CACHE_TTL = 300.0
DEFAULT_MAX_RESULTS = 50
DEFAULT_TIMEOUT = 5.0


@dataclass(frozen=True)
class Pricing:
    model: str = "per-request"
    amount: str = "0"
    token: str = NATIVE_TOKEN
    network: str = ""

    def to_dict(self) -> dict:
        d = {"model": self.model, "amount": self.amount, "token": self.token}
        if self.network:
            d["network"] = self.network
        return d


@dataclass(frozen=True)
class ServiceDescriptor:
    """A priced service advertised by a registry."""

    id: str
    name: str
    endpoint: str
    category: str = ""
    pricing: Pricing = field(default_factory=Pricing)
    networks: tuple[str, ...] = ()
    rating: Optional[float] = None
    usage_count: int = 0
    tags: tuple[str, ...] = ()
    description: str = ""
    provider: Optional[str] = None

    @property
    def price(self) -> Decimal:
        try:
            return parse_amount(self.pricing.amount)
        except ValidationError:
            return Decimal(0)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "endpoint": self.endpoint,
            "category": self.category,
            "pricing": self.pricing.to_dict(),
            "networks": list(self.networks),
            "usageCount": self.usage_count,
            "tags": list(self.tags),
        }
        if self.rating is not None:
            d["rating"] = self.rating
        if self.description:
            d["description"] = self.description
        if self.provider:
            d["provider"] = self.provider
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> ServiceDescriptor:
        """Parse a registry entry, accepting the field spellings registries use."""
        pricing = d.get("pricing") or {}
        metadata = d.get("metadata") or {}
        service_id = d.get("id") or d.get("serviceId")
        if not service_id:
            raise ValidationError("Service entry has no id")
        rating = d.get("rating", metadata.get("rating"))
        return cls(
            id=str(service_id),
            name=str(d.get("name") or service_id),
            endpoint=str(d.get("endpoint") or d.get("url") or ""),
            category=str(d.get("category") or ""),
            pricing=Pricing(
                model=str(pricing.get("model") or d.get("pricingModel") or "per-request"),
                amount=str(pricing.get("amount") or d.get("price") or "0"),
                token=str(pricing.get("token") or pricing.get("currency") or d.get("currency") or NATIVE_TOKEN),
                network=str(pricing.get("network") or d.get("network") or ""),
            ),
            networks=tuple(d.get("networks") or d.get("supportedNetworks") or ()),
            rating=float(rating) if rating is not None else None,
            usage_count=int(d.get("usageCount") or d.get("usage") or metadata.get("usage") or 0),
            tags=tuple(d.get("tags") or metadata.get("tags") or ()),
            description=str(d.get("description") or ""),
            provider=d.get("provider") or d.get("author") or metadata.get("author"),
        )


@dataclass(frozen=True)
class CachePolicy:
    ttl: float = DEFAULT_CACHE_TTL
    enabled: bool = True


@dataclass(frozen=True)
class _CacheEntry:
    value: tuple
    expires_at: float


def make_query_key(kind: str, **params: Any) -> str:
    """Normalized cache key over the whole query; unset filters are dropped."""
    normalized = {}
    for name, value in params.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
        elif isinstance(value, Decimal):
            value = str(value.normalize())
        normalized[name] = value
    return f"{kind}:{json.dumps(normalized, sort_keys=True, separators=(',', ':'), default=str)}"


class DiscoveryCache:
    """
    TTL cache of discovery results.

    Values are stored as tuples and entries are replaced whole, so a reader
    never sees a half-written list. Concurrent misses on the same key each
    call ``fetch``.
    """

    def __init__(
        self,
        policy: Optional[CachePolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or CachePolicy()
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def query(self, key: str, fetch: Callable[[], Iterable[Any]]) -> tuple:
        if self.policy.enabled:
            entry = self._entries.get(key)
            if entry is not None:
                if self._clock() < entry.expires_at:
                    return entry.value
                self._evict(key, entry)

        try:
            value = tuple(fetch())
        except DiscoveryError:
            raise
        except Exception as e:
            raise DiscoveryError(f"Discovery fetch failed for {key}: {e}") from e

        if self.policy.enabled:
            entry = _CacheEntry(value=value, expires_at=self._clock() + self.policy.ttl)
            with self._write_lock:
                self._entries[key] = entry
        return value

    def invalidate(self, key: str) -> None:
        with self._write_lock:
            self._entries.pop(key, None)

    def invalidate_all(self) -> None:
        with self._write_lock:
            self._entries = {}

    def _evict(self, key: str, stale: _CacheEntry) -> None:
        with self._write_lock:
            if self._entries.get(key) is stale:
                del self._entries[key]


@dataclass
class SupportInfo:
    supported: bool
    endpoints: list[str] = field(default_factory=list)
    payment_methods: list[str] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "supported": self.supported,
            "endpoints": self.endpoints,
            "paymentMethods": self.payment_methods,
            "networks": self.networks,
        }


def _split_header(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _price_params(min_price: Any, max_price: Any) -> dict:
    params = {}
    if min_price is not None:
        params["minPrice"] = str(parse_amount(min_price))
    if max_price is not None:
        params["maxPrice"] = str(parse_amount(max_price))
    return params


class RegistryClient:
    """Registry consumer. Listing calls are cached through a DiscoveryCache."""

    def __init__(
        self,
        registry_url: str = DEFAULT_REGISTRY_URL,
        cache: Optional[DiscoveryCache] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_results: int = DEFAULT_MAX_RESULTS,
    ):
        self.registry_url = registry_url.rstrip("/")
        self.cache = cache or DiscoveryCache()
        self.max_results = max_results
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def discover_by_category(
        self,
        category: str,
        network: Optional[str] = None,
        min_price: Any = None,
        max_price: Any = None,
        limit: Optional[int] = None,
    ) -> tuple[ServiceDescriptor, ...]:
        params = {
            "category": category,
            "limit": limit or self.max_results,
            "network": network,
            **_price_params(min_price, max_price),
        }
        key = make_query_key("category", **params)
        return self.cache.query(key, lambda: self._services("/services/category", params))

    def search(
        self,
        query: str,
        network: Optional[str] = None,
        category: Optional[str] = None,
        min_price: Any = None,
        max_price: Any = None,
        limit: Optional[int] = None,
    ) -> tuple[ServiceDescriptor, ...]:
        params = {
            "q": query,
            "limit": limit or self.max_results,
            "network": network,
            "category": category,
            **_price_params(min_price, max_price),
        }
        key = make_query_key("search", **params)
        return self.cache.query(key, lambda: self._services("/services/search", params))

    def popular(
        self,
        network: Optional[str] = None,
        category: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> tuple[ServiceDescriptor, ...]:
        params = {"limit": limit or self.max_results, "network": network, "category": category}
        key = make_query_key("popular", **params)
        return self.cache.query(key, lambda: self._services("/services/popular", params))

    def get_service(self, service_id: str) -> ServiceDescriptor:
        key = make_query_key("service", id=service_id)

        def fetch() -> list[ServiceDescriptor]:
            data = self._get(f"/services/{service_id}")
            try:
                return [ServiceDescriptor.from_dict(data)]
            except (ValidationError, TypeError, ValueError, AttributeError) as e:
                raise DiscoveryError(f"Malformed service entry for {service_id}: {e}") from e

        return self.cache.query(key, fetch)[0]

    def categories(self) -> tuple[str, ...]:
        def fetch() -> list[str]:
            data = self._get("/categories")
            raw = data if isinstance(data, list) else (data or {}).get("categories") or []
            return [str(c) for c in raw if c]

        return self.cache.query(make_query_key("categories"), fetch)

    def check_support(self, url: str) -> SupportInfo:
        """Probe a URL for payment support. Never raises on network errors."""
        try:
            response = self._http.head(url)
        except httpx.HTTPError as e:
            logger.info("Support probe failed for %s: %s", url, e)
            return SupportInfo(supported=False)

        headers = response.headers
        supported = (
            response.status_code == 402
            or headers.get("x-payment-required", "").lower() == "true"
            or headers.get("x-accepts-payment", "").lower() == "true"
        )
        if not supported:
            return SupportInfo(supported=False)
        return SupportInfo(
            supported=True,
            endpoints=_split_header(headers.get("x-payment-endpoints")),
            payment_methods=_split_header(headers.get("x-payment-methods")),
            networks=_split_header(headers.get("x-supported-networks")),
        )

    def _services(self, path: str, params: Mapping[str, Any]) -> list[ServiceDescriptor]:
        data = self._get(path, {k: v for k, v in params.items() if v is not None})
        raw = data if isinstance(data, list) else (data or {}).get("services") or []
        try:
            return [ServiceDescriptor.from_dict(entry) for entry in raw]
        except (ValidationError, TypeError, ValueError, AttributeError) as e:
            raise DiscoveryError(f"Malformed registry response from {path}: {e}") from e

    def _get(self, path: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        url = f"{self.registry_url}{path}"
        try:
            response = self._http.get(url, params=dict(params or {}))
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Registry request to {path} failed: {e}") from e
        except ValueError as e:
            raise DiscoveryError(f"Registry returned invalid JSON from {path}") from e


def filter_by_price(
    services: Sequence[ServiceDescriptor],
    min_price: Any = None,
    max_price: Any = None,
) -> list[ServiceDescriptor]:
    low = parse_amount(min_price) if min_price is not None else None
    high = parse_amount(max_price) if max_price is not None else None
    result = []
    for service in services:
        if low is not None and service.price < low:
            continue
        if high is not None and service.price > high:
            continue
        result.append(service)
    return result


def filter_by_network(services: Sequence[ServiceDescriptor], network: str) -> list[ServiceDescriptor]:
    return [s for s in services if network in s.networks or "all" in s.networks]


def sort_by_price(services: Sequence[ServiceDescriptor]) -> list[ServiceDescriptor]:
    return sorted(services, key=lambda s: s.price)


def sort_by_popularity(services: Sequence[ServiceDescriptor]) -> list[ServiceDescriptor]:
    return sorted(services, key=lambda s: s.usage_count, reverse=True)


def unique_categories(services: Sequence[ServiceDescriptor]) -> list[str]:
    seen: dict[str, None] = {}
    for service in services:
        if service.category:
            seen.setdefault(service.category, None)
    return list(seen)
