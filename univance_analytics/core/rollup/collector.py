"""
Collector

Concurrent fan-out fetch of one metric family's upstream sources. A failing
source never aborts its siblings: it is left out of `values` and recorded in
`failures`.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional

from .errors import ErrorKind, InsufficientSources, SourceUnavailable
from .models import GLOBAL_SCOPE, MetricFamily, Tenant, TimeWindow
from .sources import (
    FAMILY_SOURCES,
    TENANT_DIRECTORY,
    BreakdownSpec,
    FamilySources,
    SourceSpec,
)
from .upstream import TokenIssuerProtocol, UpstreamClient, UpstreamClientProtocol


@dataclass
class CollectorResult:
    family: MetricFamily
    scope: str = GLOBAL_SCOPE
    values: Dict[str, Any] = field(default_factory=dict)
    failures: Dict[str, ErrorKind] = field(default_factory=dict)

    @property
    def fetched(self) -> int:
        return len(self.values)

    def missing(self, required: Iterable[str]) -> List[str]:
        return [key for key in required if key not in self.values]

    def ensure_viable(self, required: Iterable[str]):
        """Raise InsufficientSources when any required source did not succeed."""
        missing = self.missing(required)
        if missing:
            raise InsufficientSources(self.family.value, missing)


class Collector:
    """
    Fetches raw values for a family from the upstream services

    The client is shared across every call of one run; the collector itself
    keeps no state between calls.
    """

    def __init__(
        self,
        client: UpstreamClientProtocol,
        catalog: Optional[Mapping[MetricFamily, FamilySources]] = None,
        source_timeout: float = 10.0,
        tenant_concurrency: int = 8,
    ):
        self.client = client
        self.catalog = dict(catalog or FAMILY_SOURCES)
        self.source_timeout = source_timeout
        self._tenant_semaphore = asyncio.Semaphore(max(1, tenant_concurrency))

    def required_sources(self, family: MetricFamily, tenant: bool = False) -> List[str]:
        """Required keys; for a tenant only those its sources can provide."""
        sources = self.catalog[MetricFamily(family)]
        if not tenant:
            return list(sources.required)
        provided = {spec.key for spec in sources.tenant_sources}
        return [key for key in sources.required if key in provided]

    async def collect(
        self,
        family: MetricFamily,
        window: TimeWindow,
        scope_filter: Optional[str] = None,
    ) -> CollectorResult:
        """
        Fetch every source of `family` for `window`

        With a scope filter only the tenant sources are fetched, restricted to
        that tenant. Catalog-driven breakdowns take a second round after their
        catalog arrives.
        """
        family = MetricFamily(family)
        sources = self.catalog[family]
        result = CollectorResult(family=family, scope=scope_filter or GLOBAL_SCOPE)

        if scope_filter:
            await asyncio.gather(*[
                self._fetch(spec, spec.request_params(window, scope_filter), result)
                for spec in sources.tenant_sources
            ])
            return result

        #-------------------------------------------------
        # Plain sources, breakdown catalogs and enumerated breakdowns together.

        first_round = [(spec, spec.request_params(window)) for spec in sources.sources]
        for breakdown in sources.breakdowns:
            if breakdown.catalog is not None:
                first_round.append((breakdown.catalog, breakdown.catalog.request_params()))
            else:
                for item in breakdown.items:
                    spec = breakdown.item_source(item, item)
                    first_round.append((spec, spec.request_params(window)))

        await asyncio.gather(*[self._fetch(spec, params, result) for spec, params in first_round])

        #-------------------------------------------------
        # Catalog-driven breakdowns.

        second_round = []
        for breakdown in sources.breakdowns:
            if breakdown.catalog is None:
                continue
            for spec in self._catalog_item_sources(breakdown, result.values.get(breakdown.catalog.key)):
                second_round.append((spec, spec.request_params(window)))

        if second_round:
            await asyncio.gather(*[self._fetch(spec, params, result) for spec, params in second_round])

        logging.info(
            f"[Collector] {family.value}: {result.fetched} sources fetched, {len(result.failures)} failed",
            extra={"failures": sorted(result.failures)}
        )
        return result

    async def collect_tenants(
        self,
        family: MetricFamily,
        window: TimeWindow,
        tenant_ids: Iterable[str],
    ) -> Dict[str, CollectorResult]:
        """Collect every tenant's sources, bounded by the tenant semaphore."""

        async def _collect_one(tenant_id: str) -> CollectorResult:
            async with self._tenant_semaphore:
                return await self.collect(family, window, scope_filter=tenant_id)

        tenant_ids = list(dict.fromkeys(tenant_ids))
        results = await asyncio.gather(*[_collect_one(tenant_id) for tenant_id in tenant_ids])
        return dict(zip(tenant_ids, results))

    async def list_tenants(self) -> List[Tenant]:
        """
        Read the school directory

        Raises SourceUnavailable when the directory cannot be read; callers
        decide whether to continue without tenants.
        """
        result = CollectorResult(family=MetricFamily.USER)
        await self._fetch(TENANT_DIRECTORY, TENANT_DIRECTORY.request_params(), result)
        if TENANT_DIRECTORY.key not in result.values:
            raise SourceUnavailable(TENANT_DIRECTORY.key, "tenant directory unavailable")

        tenants = []
        seen = set()
        for item in result.values[TENANT_DIRECTORY.key]:
            if not isinstance(item, Mapping):
                continue
            tenant_id = item.get("_id") or item.get("id")
            if not tenant_id or str(tenant_id) in seen:
                continue
            seen.add(str(tenant_id))
            tenants.append(Tenant(id=str(tenant_id), name=str(item.get("name") or "")))
        return tenants

    #-----------------------------------------------------

    async def _fetch(self, spec: SourceSpec, params: Dict[str, str], result: CollectorResult):
        try:
            body = await asyncio.wait_for(
                self.client.get_json(spec.service, spec.path, params),
                timeout=self.source_timeout,
            )
            value = spec.parse(body)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._record_failure(spec, result, f"timed out after {self.source_timeout}s")
            return
        except Exception as e:
            self._record_failure(spec, result, str(e) or type(e).__name__)
            return

        result.values[spec.key] = value

    def _record_failure(self, spec: SourceSpec, result: CollectorResult, reason: str):
        result.failures[spec.key] = ErrorKind.SOURCE_UNAVAILABLE
        logging.warning(
            f"[Collector] Source {spec.key} unavailable: {reason}",
            extra={"source": spec.key, "service": spec.service, "path": spec.path, "scope": result.scope}
        )

    @staticmethod
    def _catalog_item_sources(breakdown: BreakdownSpec, catalog: Any) -> List[SourceSpec]:
        if not isinstance(catalog, list):
            return []

        specs = []
        labels = set()
        for item in catalog:
            if not isinstance(item, Mapping):
                continue
            item_id = item.get("_id") or item.get("id")
            label = str(item.get("name") or item_id or "")
            if not label or not item_id:
                continue
            if label in labels:
                label = f"{label}#{item_id}"
            labels.add(label)
            specs.append(breakdown.item_source(label, str(item_id)))
        return specs


class UpstreamCollectorFactory:
    """
    Opens one authenticated collector per rollup run

    The system token is issued once on entry and shared by every request
    made through the yielded collector.
    """

    def __init__(
        self,
        base_urls: Mapping[str, str],
        token_issuer: TokenIssuerProtocol,
        source_timeout: float = 10.0,
        tenant_concurrency: int = 8,
        catalog: Optional[Mapping[MetricFamily, FamilySources]] = None,
    ):
        self.base_urls = dict(base_urls)
        self.token_issuer = token_issuer
        self.source_timeout = source_timeout
        self.tenant_concurrency = tenant_concurrency
        self.catalog = catalog

    @asynccontextmanager
    async def __call__(self) -> AsyncIterator[Collector]:
        token = await self.token_issuer.issue()
        async with UpstreamClient(self.base_urls, token, timeout=self.source_timeout) as client:
            yield Collector(
                client,
                catalog=self.catalog,
                source_timeout=self.source_timeout,
                tenant_concurrency=self.tenant_concurrency,
            )
