"""
Component wiring for the cohort service.

Builds the engine graph once per process from settings and exposes it as a
FastAPI dependency. Tests override `get_cohort_service` with their own graph.
"""

import logging
from typing import Optional

from cohort_engine.cache import CacheBackend, InMemoryCacheBackend, RedisCacheBackend, ResultCache
from cohort_engine.catalog import default_field_catalog
from cohort_engine.collaborators import OlapSlicer, SqlFeatureStore, SqlLinkageRepository
from cohort_engine.drilldown import DrilldownAssembler
from cohort_engine.execution import QueryExecutor, QueryLimits, SqlFactStore
from cohort_engine.export import CsvExporter
from cohort_engine.materialization import MaterializationRepository, MaterializationScheduler
from cohort_engine.predicates import PredicateCompiler
from cohort_engine.service import CohortService
from cohort_engine.templates import TemplateRepository

from cohort_service.config import Settings, settings as default_settings
from cohort_service.db import get_session_factory

logger = logging.getLogger(__name__)


def build_cache_backend(settings: Settings) -> Optional[CacheBackend]:
    """Backend named by COHORT_CACHE_BACKEND: redis, memory or none."""
    kind = (settings.cache_backend or "").strip().lower()
    if kind == "redis":
        return RedisCacheBackend(settings.redis_url)
    if kind == "memory":
        return InMemoryCacheBackend()
    if kind not in ("", "none"):
        logger.warning(f"Unknown cache backend '{settings.cache_backend}', caching disabled")
    return None


def build_cohort_service(
    settings: Settings,
    session_factory,
    cache_backend: Optional[CacheBackend] = None,
) -> CohortService:
    """Assemble the engine from settings and a session factory."""
    catalog = default_field_catalog()
    compiler = PredicateCompiler(catalog, strict=settings.strict_filters)
    executor = QueryExecutor(
        fact_store=SqlFactStore(session_factory),
        catalog=catalog,
        compiler=compiler,
        limits=QueryLimits.from_settings(settings),
    )

    features = SqlFeatureStore(
        session_factory,
        online=cache_backend,
        key_prefix=settings.feature_online_prefix,
        ttl_seconds=settings.feature_cache_ttl_seconds,
    )
    scheduler = MaterializationScheduler(
        repository=MaterializationRepository(session_factory),
        executor=executor,
        features=features,
        workers=settings.effective_materialize_workers,
        feature_ttl_seconds=settings.feature_cache_ttl_seconds,
    )
    drilldown = DrilldownAssembler(
        executor,
        features=features,
        linkage=SqlLinkageRepository(session_factory),
        timeline_limit=settings.timeline_default_limit,
        linkage_limit=settings.linkage_lookup_limit,
    )

    logger.info(
        f"Cohort engine ready: cache={type(cache_backend).__name__ if cache_backend else 'none'}, "
        f"workers={scheduler.workers}, strict_filters={settings.strict_filters}"
    )
    return CohortService(
        executor=executor,
        cache=ResultCache(cache_backend, ttl_seconds=settings.cohort_cache_ttl_seconds),
        exporter=CsvExporter(executor),
        drilldown=drilldown,
        scheduler=scheduler,
        templates=TemplateRepository(session_factory),
        slicer=OlapSlicer(session_factory),
    )


_service: Optional[CohortService] = None


def get_cohort_service() -> CohortService:
    """Get or create the process-wide cohort service (dependency injection)."""
    global _service
    if _service is None:
        _service = build_cohort_service(
            default_settings,
            get_session_factory(),
            cache_backend=build_cache_backend(default_settings),
        )
    return _service


def shutdown_cohort_service(timeout: float = 30.0) -> None:
    """Stop accepting materializations and wait for dispatched jobs."""
    global _service
    if _service is not None and _service.scheduler is not None:
        _service.scheduler.shutdown(wait=True, timeout=timeout)
    _service = None
