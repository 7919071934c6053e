# defer_app/services/preview.py
import logging
from typing import Any, Dict, Optional

import httpx

from defer_app.core.config import DEFER_GRACE_MS, DEFER_STAGGER_MS
from defer_app.engine.classifier import classify
from defer_app.engine.controller import Disposition
from defer_app.engine.dom import Window, parse_into
from defer_app.engine.models import DeferConfig
from defer_app.engine.runtime import install
from defer_app.services.categorizer import categorize_script, defer_safety

logger = logging.getLogger(__name__)

DEFAULT_LOAD_AT_MS = 1500


async def fetch_storefront_page(shop: str, path: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> str:
    async with httpx.AsyncClient(timeout=20, follow_redirects=True, transport=transport) as client:
        r = await client.get(f"https://{shop}{path}", headers={"User-Agent": "rl-defer-preview/1.0"})
        r.raise_for_status()
        return r.text


def simulate_page(
    html: str,
    url: str,
    config: Optional[DeferConfig],
    shop: str = "",
    load_at_ms: int = DEFAULT_LOAD_AT_MS,
    stagger_ms: int = DEFER_STAGGER_MS,
    grace_ms: int = DEFER_GRACE_MS,
) -> Dict[str, Any]:
    """
    Run the defer engine over a page as the storefront would, with the loader first
    in <head>, and report what happened to every external script.
    """
    window = Window(url)
    runtime = install(window, config, stagger_ms=stagger_ms, grace_ms=grace_ms)

    parse_into(window, html)
    window.finish_parsing()
    window.loop.advance(load_at_ms)
    window.complete_load()
    window.loop.run_until_idle()

    scripts = []
    if runtime is not None:
        controller = runtime.controller
        for node_id, disposition in controller.dispositions.items():
            if disposition in (Disposition.SKIPPED, Disposition.RELEASED):
                continue
            scripts.append(_describe(controller.sources[node_id], disposition, controller.rule_ids.get(node_id), shop))
        release = {
            "reason": runtime.scheduler.release_reason,
            "order": [{"src": src, "at_ms": at} for at, src in runtime.scheduler.release_log],
        }
    else:
        for script in window.document.query_selector_all("script"):
            if script.src:
                scripts.append(_describe(script.src, Disposition.PASSTHROUGH, None, shop))
        release = {"reason": None, "order": []}

    return {
        "template": classify(window.location.pathname).value,
        "engaged": runtime is not None,
        "load_at_ms": load_at_ms,
        "scripts": scripts,
        "release": release,
        "requested_scripts": list(window.document.requested_scripts),
        "counts": {
            d.value: sum(1 for s in scripts if s["disposition"] == d.value)
            for d in (Disposition.PASSTHROUGH, Disposition.BLOCKED, Disposition.QUEUED)
        },
    }


def _describe(src: str, disposition: Disposition, rule_id: Optional[str], shop: str) -> Dict[str, Any]:
    category = categorize_script(src, shop)
    return {
        "src": src,
        "disposition": disposition.value,
        "rule": rule_id,
        "category": category,
        "safety": defer_safety(src, category),
    }
