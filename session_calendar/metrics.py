from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class RouteMetrics:
    request_count: int = 0
    error_count: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0


@dataclass
class ProviderCalendarMetrics:
    events_created: int = 0
    delegated_fallbacks: int = 0
    busy_query_failures: int = 0


@dataclass
class Metrics:
    total_requests: int = 0
    total_errors: int = 0
    calendar_events_created: int = 0
    calendar_event_failures: int = 0
    calendar_events_skipped_past: int = 0
    calendar_events_updated: int = 0
    calendar_events_deleted: int = 0
    calendar_delegated_fallbacks: int = 0
    calendar_missing_conference: int = 0
    calendar_retries: int = 0
    calendar_busy_queries: int = 0
    calendar_busy_query_failures: int = 0
    directory_cache_hits: int = 0
    directory_cache_misses: int = 0
    directory_fallbacks: int = 0
    readiness_failures: int = 0
    by_provider: Dict[str, ProviderCalendarMetrics] = field(default_factory=dict)
    route_metrics: Dict[str, RouteMetrics] = field(default_factory=dict)

    def for_provider(self, provider_id: str) -> ProviderCalendarMetrics:
        return self.by_provider.setdefault(provider_id, ProviderCalendarMetrics())

    def record_route(self, path: str, latency_ms: float, error: bool) -> None:
        rm = self.route_metrics.setdefault(path, RouteMetrics())
        rm.request_count += 1
        rm.total_latency_ms += latency_ms
        if latency_ms > rm.max_latency_ms:
            rm.max_latency_ms = latency_ms
        if error:
            rm.error_count += 1

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_errors": self.total_errors,
            "calendar_events_created": self.calendar_events_created,
            "calendar_event_failures": self.calendar_event_failures,
            "calendar_events_skipped_past": self.calendar_events_skipped_past,
            "calendar_events_updated": self.calendar_events_updated,
            "calendar_events_deleted": self.calendar_events_deleted,
            "calendar_delegated_fallbacks": self.calendar_delegated_fallbacks,
            "calendar_missing_conference": self.calendar_missing_conference,
            "calendar_retries": self.calendar_retries,
            "calendar_busy_queries": self.calendar_busy_queries,
            "calendar_busy_query_failures": self.calendar_busy_query_failures,
            "directory_cache_hits": self.directory_cache_hits,
            "directory_cache_misses": self.directory_cache_misses,
            "directory_fallbacks": self.directory_fallbacks,
            "readiness_failures": self.readiness_failures,
            "by_provider": {
                provider_id: {
                    "events_created": pm.events_created,
                    "delegated_fallbacks": pm.delegated_fallbacks,
                    "busy_query_failures": pm.busy_query_failures,
                }
                for provider_id, pm in self.by_provider.items()
            },
            "route_metrics": {
                path: {
                    "request_count": rm.request_count,
                    "error_count": rm.error_count,
                    "avg_latency_ms": (
                        rm.total_latency_ms / rm.request_count
                        if rm.request_count
                        else 0.0
                    ),
                    "max_latency_ms": rm.max_latency_ms,
                }
                for path, rm in self.route_metrics.items()
            },
        }

    def reset(self) -> None:
        fresh = Metrics()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(fresh, name))


metrics = Metrics()
