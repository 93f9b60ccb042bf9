"""
Analytics core: pure reducers over upstream records, IP geolocation and
clustering, the per-service health gate, and the aggregator that ties them
together behind per-domain caches.
"""

from __future__ import annotations

from .aggregator import AnalyticsAggregator
from .geo import GeoResolver, cluster_geo_results
from .health import HealthGate, Service

__all__ = [
    "AnalyticsAggregator",
    "GeoResolver",
    "HealthGate",
    "Service",
    "cluster_geo_results",
]
