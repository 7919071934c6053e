# defer_app/core/routers/defer_config.py
import logging
import re
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response
from pydantic import ValidationError

from defer_app.core import config as settings
from defer_app.engine.matcher import UnportablePattern, compile_pattern
from defer_app.engine.models import DeferConfig, MAX_RELEASE_AFTER_MS, Rule, default_config
from defer_app.services.analysis import JsDeferClient, handle_psi_result, poll_and_save_results
from defer_app.services.loader_script import render_loader
from defer_app.services.preview import fetch_storefront_page, simulate_page
from defer_app.services.store import PostgresShopStore, ShopStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/defer-config", tags=["defer-config"])

_store: Optional[ShopStore] = None


class ApiError(HTTPException):
    """Rendered as {"ok": false, "error": detail} by the app's exception handler."""


def get_store() -> ShopStore:
    global _store
    if _store is None:
        _store = PostgresShopStore()
    return _store


def get_js_defer_client() -> JsDeferClient:
    return JsDeferClient()


async def resolve_shop(request: Request, store: ShopStore = Depends(get_store)) -> str:
    """
    Every shop-scoped route takes `shop` from the query string or JSON body,
    requires a *.myshopify.com domain and counts the request against the shop's usage.
    """
    shop = request.query_params.get("shop")
    if not shop and request.method in ("POST", "PUT", "DELETE"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            shop = body.get("shop")

    if not shop:
        raise ApiError(400, "shop parameter required")
    if not shop.endswith(".myshopify.com"):
        raise ApiError(400, "Invalid shop format")

    try:
        await store.record_usage(shop)
    except Exception as e:
        logger.error(f"Shop validation error for {shop}: {e}")
        raise ApiError(500, "Internal server error")
    return shop


def require_admin(admin_key: Optional[str] = Query(None)) -> None:
    if not settings.ADMIN_KEY or admin_key != settings.ADMIN_KEY:
        raise ApiError(403, "Forbidden - Invalid admin key")


async def _load_config(store: ShopStore, shop: str) -> Optional[DeferConfig]:
    try:
        return await store.get_config(shop)
    except Exception as e:
        logger.error(f"Error fetching defer config for {shop}: {e}", exc_info=True)
        raise ApiError(500, "Internal server error")


async def _save_config(store: ShopStore, shop: str, cfg: DeferConfig) -> DeferConfig:
    try:
        return await store.save_config(shop, cfg)
    except Exception as e:
        logger.error(f"Error updating defer config for {shop}: {e}", exc_info=True)
        raise ApiError(500, "Internal server error")


def _public(cfg: DeferConfig) -> Dict[str, Any]:
    return cfg.to_storage()


def validate_rules_payload(rules: Any) -> List[Rule]:
    if not isinstance(rules, list):
        raise ApiError(400, "rules must be an array")
    parsed = []
    for i, raw in enumerate(rules):
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("src_regex"):
            raise ApiError(400, f"Rule {i + 1}: id and src_regex are required")
        if not isinstance(raw["id"], str) or not isinstance(raw["src_regex"], str):
            raise ApiError(400, f"Rule {i + 1}: id and src_regex must be strings")
        try:
            compile_pattern(raw["src_regex"])
        except (re.error, UnportablePattern) as e:
            raise ApiError(400, f"Rule {i + 1}: Invalid regex pattern - {e}")
        try:
            parsed.append(Rule.model_validate(raw))
        except ValidationError as e:
            raise ApiError(400, f"Rule {i + 1}: {e.errors()[0]['msg']}")
    return parsed


# ============================================================================
# CONFIGURATION CRUD
# ============================================================================

@router.get("")
async def get_defer_config(shop: str = Depends(resolve_shop), store: ShopStore = Depends(get_store)):
    cfg = await _load_config(store, shop)
    if cfg is not None:
        return {**_public(cfg), "ok": True, "source": "database", "shop": shop}
    return {**_public(default_config()), "ok": True, "source": "default", "shop": shop}


@router.post("")
async def update_defer_config(
    payload: Dict[str, Any] = Body(...),
    shop: str = Depends(resolve_shop),
    store: ShopStore = Depends(get_store),
):
    """Replace the shop's whole configuration."""
    release_after_ms = payload.get("release_after_ms")
    if release_after_ms is not None and (
        isinstance(release_after_ms, bool)
        or not isinstance(release_after_ms, (int, float))
        or not 0 <= release_after_ms <= MAX_RELEASE_AFTER_MS
    ):
        raise ApiError(400, f"release_after_ms must be a number between 0 and {MAX_RELEASE_AFTER_MS}")

    rules = validate_rules_payload(payload["rules"]) if payload.get("rules") is not None else []
    enabled = payload.get("enabled")
    if enabled is not None and not isinstance(enabled, bool):
        raise ApiError(400, "enabled must be a boolean")

    try:
        cfg = DeferConfig(
            release_after_ms=int(release_after_ms) if release_after_ms is not None else default_config().release_after_ms,
            rules=rules,
            enabled=enabled if enabled is not None else True,
            source=payload.get("source") or "manual",
        )
    except ValidationError as e:
        raise ApiError(400, f"Invalid config: {e.errors()[0]['msg']}")
    saved = await _save_config(store, shop, cfg)
    return {**_public(saved), "ok": True, "message": "Configuration updated successfully", "shop": shop}


@router.delete("")
async def reset_defer_config(shop: str = Depends(resolve_shop), store: ShopStore = Depends(get_store)):
    try:
        await store.reset_config(shop)
    except Exception as e:
        logger.error(f"Error resetting defer config for {shop}: {e}", exc_info=True)
        raise ApiError(500, "Internal server error")
    return {**_public(default_config()), "ok": True, "message": "Configuration reset to defaults", "shop": shop}


# ----------------------------------------------------------------------------
# single rules
# ----------------------------------------------------------------------------

@router.post("/rules", status_code=201)
async def create_rule(
    payload: Dict[str, Any] = Body(...),
    shop: str = Depends(resolve_shop),
    store: ShopStore = Depends(get_store),
):
    (rule,) = validate_rules_payload([payload.get("rule", payload)])
    cfg = await _load_config(store, shop) or default_config()
    if cfg.find_rule(rule.id) is not None:
        raise ApiError(409, f"Rule {rule.id} already exists")
    saved = await _save_config(store, shop, cfg.model_copy(update={"rules": cfg.rules + [rule]}))
    return {"ok": True, "rule": rule.to_storage(), "rules": len(saved.rules), "shop": shop}


@router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    payload: Dict[str, Any] = Body(...),
    shop: str = Depends(resolve_shop),
    store: ShopStore = Depends(get_store),
):
    cfg = await _load_config(store, shop)
    existing = cfg.find_rule(rule_id) if cfg else None
    if existing is None:
        raise ApiError(404, f"Rule {rule_id} not found")

    changes = payload.get("rule", payload)
    merged = {**existing.to_storage(), **{k: v for k, v in changes.items() if k != "shop"}, "id": rule_id}
    (rule,) = validate_rules_payload([merged])
    rules = [rule if r.id == rule_id else r for r in cfg.rules]
    await _save_config(store, shop, cfg.model_copy(update={"rules": rules}))
    return {"ok": True, "rule": rule.to_storage(), "shop": shop}


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, shop: str = Depends(resolve_shop), store: ShopStore = Depends(get_store)):
    cfg = await _load_config(store, shop)
    if cfg is None or cfg.find_rule(rule_id) is None:
        raise ApiError(404, f"Rule {rule_id} not found")
    rules = [r for r in cfg.rules if r.id != rule_id]
    await _save_config(store, shop, cfg.model_copy(update={"rules": rules}))
    return {"ok": True, "deleted": rule_id, "rules": len(rules), "shop": shop}


# ============================================================================
# ADMIN
# ============================================================================

@router.get("/all", dependencies=[Depends(require_admin)])
async def list_defer_configs(store: ShopStore = Depends(get_store)):
    try:
        shops = await store.list_configs(limit=100)
    except Exception as e:
        logger.error(f"Error fetching all configs: {e}", exc_info=True)
        raise ApiError(500, "Internal server error")
    return {
        "shops": [
            {
                "shop": s["shop"],
                "config": s.get("config"),
                "usage": s.get("usage"),
                "connected_at": s.get("connected_at"),
            }
            for s in shops
        ],
        "total": len(shops),
        "ok": True,
    }


@router.post("/usage/reset-monthly", dependencies=[Depends(require_admin)])
async def reset_monthly_usage(store: ShopStore = Depends(get_store)):
    reset = await store.reset_monthly_usage()
    return {"ok": True, "shops_reset": reset}


# ============================================================================
# STOREFRONT DELIVERY
# ============================================================================

@router.get("/loader.js")
async def loader_script(shop: str = Depends(resolve_shop), store: ShopStore = Depends(get_store)):
    headers = {
        "Cache-Control": "public, max-age=3600",
        "Access-Control-Allow-Origin": f"https://{shop}",
    }
    try:
        cfg = await store.get_config(shop) or default_config()
        body = render_loader(cfg)
    except Exception as e:
        logger.error(f"Error generating loader script for {shop}: {e}", exc_info=True)
        return Response("//Error generating loader script", status_code=500, media_type="application/javascript")
    return Response(body, media_type="application/javascript", headers=headers)


@router.get("/config.json")
async def config_json(response: Response, shop: str = Depends(resolve_shop), store: ShopStore = Depends(get_store)):
    cfg = await _load_config(store, shop) or default_config()
    response.headers["Cache-Control"] = "public, max-age=300"
    response.headers["Access-Control-Allow-Origin"] = f"https://{shop}"
    return _public(cfg)


# ============================================================================
# PREVIEW
# ============================================================================

@router.post("/preview")
async def preview(
    payload: Dict[str, Any] = Body(...),
    shop: str = Depends(resolve_shop),
    store: ShopStore = Depends(get_store),
):
    """
    Dry-run the defer engine against a storefront page.

    Body: {"path": "/products/x", "html": optional page source, "config": optional
    unsaved config to try instead of the stored one, "load_at_ms": optional}.
    """
    path = payload.get("path") or "/"
    if not path.startswith("/"):
        raise ApiError(400, "path must start with /")

    if payload.get("config") is not None:
        try:
            cfg = DeferConfig.model_validate(payload["config"])
        except ValidationError as e:
            raise ApiError(400, f"Invalid config: {e.errors()[0]['msg']}")
    else:
        cfg = await _load_config(store, shop) or default_config()

    html = payload.get("html")
    if html is None:
        try:
            html = await fetch_storefront_page(shop, path)
        except httpx.HTTPError as e:
            logger.warning(f"Preview fetch failed for {shop}{path}: {e}")
            raise ApiError(502, f"Could not fetch storefront page: {e}")

    report = simulate_page(html, f"https://{shop}{path}", cfg, shop=shop,
                           load_at_ms=int(payload.get("load_at_ms") or 1500))
    return {"ok": True, "shop": shop, "path": path, **report}


# ============================================================================
# ANALYSIS HAND-OFF
# ============================================================================

@router.post("/analysis/queue")
async def queue_analysis(
    payload: Dict[str, Any] = Body(...),
    shop: str = Depends(resolve_shop),
    client: JsDeferClient = Depends(get_js_defer_client),
):
    templates = payload.get("templates")
    if not isinstance(templates, list) or not templates:
        raise ApiError(400, "templates must be a non-empty array")
    for item in templates:
        if not isinstance(item, dict) or not item.get("template") or not item.get("url"):
            raise ApiError(400, "each template needs template and url")
    result = await client.queue_bulk_analysis(shop, templates)
    return {"ok": result["success"], "shop": shop, **result}


@router.post("/analysis/poll", dependencies=[Depends(require_admin)])
async def poll_analysis(
    max_attempts: int = Query(1, ge=1, le=10),
    store: ShopStore = Depends(get_store),
    client: JsDeferClient = Depends(get_js_defer_client),
):
    result = await poll_and_save_results(client, store, max_attempts=max_attempts)
    return {"ok": result["success"], **result}


@router.post("/analysis/result", dependencies=[Depends(require_admin)])
async def analysis_result(payload: Dict[str, Any] = Body(...), store: ShopStore = Depends(get_store)):
    """Push endpoint for finished analyzer jobs."""
    if not payload.get("shop") or not payload.get("template"):
        raise ApiError(400, "shop and template are required")
    result = await handle_psi_result(store, payload)
    if result is None:
        return {"ok": True, "skipped": True, "status": payload.get("status")}
    return {"ok": result["success"], **result}
