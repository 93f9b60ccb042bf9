#!/usr/bin/env python3
"""
layout-example.py

Drives a dashboard layout from a script, as the logged-in user:
  - load (or rebuild) the layout
  - hide the Hydra widgets
  - widen the peak hours chart
  - flush the debounced write and print the result

ENV:
  ATHENA_BASE_URL   (default: http://localhost:8000)
  ATHENA_SESSION    (required: session cookie value)
"""

from __future__ import annotations

import asyncio
import json
import os
import sys

from athena.client import open_layout_store
from athena.models import WidgetId


async def run() -> None:
    if not os.getenv("ATHENA_SESSION"):
        print("ERROR: ATHENA_SESSION missing from environment.", file=sys.stderr)
        sys.exit(2)

    store = await open_layout_store(os.getenv("ATHENA_BASE_URL", "http://localhost:8000"))
    store.subscribe(lambda layout: print(f"[CHANGE] {len(layout.widgets)} widgets placed"))

    store.remove_widget(WidgetId.STAT_HYDRA_HEALTH)
    store.remove_widget(WidgetId.CHART_OAUTH2_GRANT_TYPES)
    store.resize_widget(WidgetId.CHART_PEAK_HOURS, 12, 6)

    await store.flush()
    print(json.dumps(store.snapshot().to_wire(), indent=2))


if __name__ == "__main__":
    asyncio.run(run())
