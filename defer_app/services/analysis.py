# defer_app/services/analysis.py
"""
Hand-off to the JS defer analysis microservice.

The service runs PageSpeed/coverage analysis per template and answers with defer
recommendations; these are turned into template-scoped rules and merged into the
shop's defer config.
"""
import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from defer_app.core.config import JS_DEFER_SERVICE_URL
from defer_app.engine.models import DeferConfig, Rule, RuleAction, RuleConditions
from defer_app.services.store import ShopStore

logger = logging.getLogger(__name__)

# recommendation bucket -> rule priority
RECOMMENDATION_PRIORITIES = [("async", 8), ("defer", 6), ("delay", 4)]

_REGEX_SPECIALS = re.compile(r"[.*+?^${}()|\[\]\\]")
_ORIGIN = re.compile(r"https?://[^/]+")


def url_to_regex(url: str) -> str:
    """Escape a script URL into a pattern, letting any host serve it."""
    escaped = _REGEX_SPECIALS.sub(lambda m: "\\" + m.group(0), url)
    return _ORIGIN.sub(".*", escaped, count=1)


def rules_from_recommendations(template: str, recommendations: Dict[str, Any]) -> List[Rule]:
    rules = []
    for kind, priority in RECOMMENDATION_PRIORITIES:
        bucket = (recommendations or {}).get(kind) or {}
        for idx, file in enumerate(bucket.get("files") or []):
            rules.append(
                Rule(
                    id=f"{template}-{kind}-{idx}",
                    src_regex=url_to_regex(file["url"]),
                    action=RuleAction.DEFER,  # every bucket defers on the storefront
                    priority=priority,
                    enabled=True,
                    conditions=RuleConditions(page_types=[template]),
                )
            )
    return rules


def apply_template_rules(config: Optional[DeferConfig], template: str, rules: List[Rule]) -> DeferConfig:
    """Replace the template's generated rules, leaving every other rule alone."""
    config = config or DeferConfig()
    kept = [r for r in config.rules if not r.id.startswith(f"{template}-")]
    return config.model_copy(update={
        "rules": kept + list(rules),
        "enabled": True,
        "source": "auto",
        "updated_at": datetime.utcnow(),
    })


class JsDeferClient:
    def __init__(self, base_url: str = JS_DEFER_SERVICE_URL, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    async def queue_analysis(self, shop: str, template: str, url: str) -> Dict[str, Any]:
        """POST /analyze/page. Response: {ok, jobId, estimated_time_seconds}."""
        logger.info(f"[JS Defer] Queueing analysis: {template} for {shop}")
        try:
            async with self._client(10.0) as client:
                r = await client.post("/analyze/page", json={"shop": shop, "template": template, "url": url})
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[JS Defer] Queue failed: {e}")
            return {"success": False, "error": str(e)}

        if data.get("ok"):
            logger.info(f"[JS Defer] Analysis queued: {data.get('jobId')}")
            return {"success": True, "jobId": data.get("jobId"), "estimatedTime": data.get("estimated_time_seconds")}
        return {"success": False, "error": data.get("error") or "Failed to queue analysis"}

    async def queue_bulk_analysis(self, shop: str, templates: List[Dict[str, str]], pause_s: float = 1.0) -> Dict[str, Any]:
        logger.info(f"[JS Defer] Bulk queueing {len(templates)} templates for {shop}")
        results = []
        for i, item in enumerate(templates):
            result = await self.queue_analysis(shop, item["template"], item["url"])
            results.append({"template": item["template"], **result})
            # spacing between requests keeps the analyzer from rate limiting us
            if pause_s and i < len(templates) - 1:
                await asyncio.sleep(pause_s)

        success_count = sum(1 for r in results if r["success"])
        logger.info(f"[JS Defer] Queued {success_count}/{len(templates)} analyses")
        return {
            "success": success_count > 0,
            "results": results,
            "successCount": success_count,
            "totalCount": len(templates),
        }

    async def peek_results(self) -> Dict[str, Any]:
        return await self._get_result("/results/peek", "No results available")

    async def get_results(self, shop: str, template: str) -> Dict[str, Any]:
        return await self._get_result(f"/results/{quote(shop, safe='')}/{quote(template, safe='')}", "Results not found")

    async def _get_result(self, path: str, missing: str) -> Dict[str, Any]:
        try:
            async with self._client(5.0) as client:
                r = await client.get(path)
                r.raise_for_status()
                data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[JS Defer] GET {path} failed: {e}")
            return {"success": False, "error": str(e)}
        if data.get("ok") and data.get("result"):
            return {"success": True, "result": data["result"]}
        return {"success": False, "error": missing}

    async def health_check(self) -> bool:
        try:
            async with self._client(3.0) as client:
                r = await client.get("/health")
                return r.json().get("ok") is True
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[JS Defer] Health check failed: {e}")
            return False

    async def categorizer_stats(self) -> Optional[Dict[str, Any]]:
        try:
            async with self._client(5.0) as client:
                r = await client.get("/categorizer/stats")
                r.raise_for_status()
                return r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[JS Defer] Stats failed: {e}")
            return None


# ============================================================================
# RESULT HANDLING
# ============================================================================

async def save_analysis(store: ShopStore, result: Dict[str, Any]) -> Dict[str, Any]:
    shop = result["shop"]
    template = result["template"]
    recommendations = result.get("defer_recommendations") or {}

    try:
        await store.save_template_analysis(shop, template, {
            "psi_analyzed": True,
            "js_files": [f.get("url") for f in result.get("js_files") or []],
            "defer_recommendations": recommendations,
            "last_psi_analysis": datetime.utcnow().isoformat(),
            "psi_metrics": result.get("psi_metrics"),
            "analysis_summary": result.get("summary"),
        })

        rules = rules_from_recommendations(template, recommendations)
        if rules:
            config = apply_template_rules(await store.get_config(shop), template, rules)
            await store.save_config(shop, config)
    except Exception as e:
        logger.error(f"[JS Defer] Save failed for {shop}/{template}: {e}", exc_info=True)
        return {"success": False, "error": str(e)}

    logger.info(f"[JS Defer] Analysis saved for {shop}/{template}: {len(rules)} rules")
    return {"success": True, "rulesApplied": len(rules)}


async def handle_psi_result(store: ShopStore, result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Persist a finished analysis pushed by the analyzer; anything not completed is skipped."""
    if result.get("status") != "completed":
        logger.info(f"[JS Defer] Skipping {result.get('status')} result: {result.get('jobId')}")
        return None
    return await save_analysis(store, result)


async def poll_and_save_results(
    client: JsDeferClient,
    store: ShopStore,
    max_attempts: int = 5,
    interval_s: float = 5.0,
) -> Dict[str, Any]:
    logger.info("[JS Defer] Polling for results...")
    for attempt in range(1, max_attempts + 1):
        peek = await client.peek_results()
        if peek["success"]:
            saved = await save_analysis(store, peek["result"])
            return {**saved, "result": peek["result"]}
        if attempt < max_attempts:
            logger.info(f"[JS Defer] No results yet, waiting... ({attempt}/{max_attempts})")
            await asyncio.sleep(interval_s)
    return {"success": False, "error": "No results after polling"}
