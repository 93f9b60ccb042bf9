from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from athena.analytics.health import Service
from athena.core.redis import get_redis_manager
from athena.core.security import check_rate_limit, validate_athena_api_key
from athena.dashboard.widgets import LAYOUT_VERSION
from athena.settings import get_settings

router = APIRouter(prefix="/api/v1", tags=["system"])


@router.get("/system/version", operation_id="get_system_version")
async def get_system_version():
    s = get_settings()
    return {
        "detail": "System Version.",
        "system_version": s.ATHENA_BUILD_VERSION,
        "layout_version": LAYOUT_VERSION,
    }


@router.get("/system/heartbeat", operation_id="heartbeat_check")
async def heartbeat_check():
    current_time = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return {"status": "alive", "timestamp": current_time}


@router.get("/system/diagnostics", operation_id="diagnostics")
async def diagnostics(request: Request, x_api_key: str = Depends(validate_athena_api_key)):
    """
    Extended readiness/diagnostics:
    - Redis ping
    - upstream health as last seen by the health gate
    - layout backend and live store count
    - geo cache size
    """
    s = get_settings()
    await check_rate_limit("admin", x_api_key, 30, 60)
    rm = get_redis_manager()
    try:
        redis_ok = await rm.is_available()
    except Exception:
        redis_ok = False

    state = request.app.state
    aggregator = getattr(state, "aggregator", None)
    registry = getattr(state, "layout_registry", None)

    health = {}
    if aggregator is not None:
        for service in Service:
            last = aggregator.gate.last_status(service)
            health[service.value] = last.model_dump(mode="json", by_alias=True) if last else None

    return {
        "redis": "ok" if redis_ok else "down",
        "settings_loaded": bool(aggregator and aggregator.settings_loaded),
        "upstream_health": health,
        "hydra_enabled": s.HYDRA_ENABLED,
        "ory_network": s.ORY_NETWORK,
        "layout": {
            "backend": s.LAYOUT_BACKEND,
            "version": LAYOUT_VERSION,
            "stores": len(registry) if registry is not None else 0,
        },
        "geo_cache": len(aggregator.geo) if aggregator is not None else 0,
        "pubsub_channel": rm.pubsub_channel,
        "audit_stream": rm.audit_stream_name,
    }
