import httpx
import pytest

from defer_app.core import config as settings
from defer_app.core.routers import defer_config as router_module
from defer_app.services.loader_script import DISABLED_LOADER

from conftest import SHOP

GA = {"id": "ga", "src_regex": "googletagmanager", "action": "defer"}


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", "secret")
    return "secret"


# ----------------------------------------------------------------------------
# shop validation
# ----------------------------------------------------------------------------

def test_shop_is_required(client):
    r = client.get("/defer-config")
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": "shop parameter required"}


def test_shop_must_be_myshopify_domain(client):
    r = client.get("/defer-config", params={"shop": "evil.example.com"})
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid shop format"


def test_shop_can_come_from_json_body(client, store):
    store.add_shop(SHOP)
    r = client.post("/defer-config", json={"shop": SHOP, "rules": [GA]})
    assert r.status_code == 200
    assert r.json()["shop"] == SHOP


def test_requests_count_against_usage(client, store):
    store.add_shop(SHOP)
    client.get("/defer-config", params={"shop": SHOP})
    client.get("/defer-config/config.json", params={"shop": SHOP})
    assert store.shops[SHOP]["usage"]["total_requests"] == 2
    assert store.shops[SHOP]["usage"]["requests_this_month"] == 2


def test_usage_failure_is_a_server_error(client, store, monkeypatch):
    async def broken(shop):
        raise RuntimeError("db down")

    monkeypatch.setattr(store, "record_usage", broken)
    r = client.get("/defer-config", params={"shop": SHOP})
    assert r.status_code == 500
    assert r.json() == {"ok": False, "error": "Internal server error"}


# ----------------------------------------------------------------------------
# config CRUD
# ----------------------------------------------------------------------------

def test_get_returns_defaults_for_unconfigured_shop(client):
    body = client.get("/defer-config", params={"shop": SHOP}).json()
    assert body["ok"] is True
    assert body["source"] == "default"
    assert body["release_after_ms"] == 2000
    assert body["enabled"] is True
    assert body["rules"] == []


def test_post_then_get_round_trip(client, store):
    payload = {"release_after_ms": 1500, "enabled": True, "rules": [{**GA, "priority": 3}]}
    r = client.post("/defer-config", params={"shop": SHOP}, json=payload)
    assert r.status_code == 200
    assert r.json()["message"] == "Configuration updated successfully"

    body = client.get("/defer-config", params={"shop": SHOP}).json()
    assert body["source"] == "database"
    assert body["release_after_ms"] == 1500
    assert body["rules"][0]["src_regex"] == "googletagmanager"
    assert body["rules"][0]["priority"] == 3
    assert store.shops[SHOP]["defer_config"]["rules"][0]["id"] == "ga"


def test_zero_release_delay_is_kept(client):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"release_after_ms": 0, "rules": []})
    assert r.status_code == 200
    assert r.json()["release_after_ms"] == 0


@pytest.mark.parametrize("value", [-1, 30001, "soon", True])
def test_release_delay_bounds(client, value):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"release_after_ms": value})
    assert r.status_code == 400
    assert r.json()["error"] == "release_after_ms must be a number between 0 and 30000"


@pytest.mark.parametrize("rules, message", [
    ("ga", "rules must be an array"),
    ([GA, {"id": "x"}], "Rule 2: id and src_regex are required"),
    ([{"src_regex": "x"}], "Rule 1: id and src_regex are required"),
])
def test_rule_validation_messages(client, rules, message):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"rules": rules})
    assert r.status_code == 400
    assert r.json()["error"] == message


def test_invalid_regex_is_rejected(client):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"rules": [{"id": "bad", "src_regex": "(open"}]})
    assert r.status_code == 400
    assert r.json()["error"].startswith("Rule 1: Invalid regex pattern - ")


def test_unknown_action_is_rejected(client):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"rules": [{**GA, "action": "explode"}]})
    assert r.status_code == 400
    assert r.json()["error"].startswith("Rule 1: ")


def test_delete_resets_to_defaults(client):
    client.post("/defer-config", params={"shop": SHOP}, json={"rules": [GA]})
    r = client.delete("/defer-config", params={"shop": SHOP})
    assert r.json()["message"] == "Configuration reset to defaults"
    assert client.get("/defer-config", params={"shop": SHOP}).json()["source"] == "default"


# ----------------------------------------------------------------------------
# single rules
# ----------------------------------------------------------------------------

def test_rule_lifecycle(client):
    r = client.post("/defer-config/rules", params={"shop": SHOP}, json=GA)
    assert r.status_code == 201
    assert r.json()["rules"] == 1

    r = client.post("/defer-config/rules", params={"shop": SHOP}, json=GA)
    assert r.status_code == 409

    r = client.put("/defer-config/rules/ga", params={"shop": SHOP}, json={"action": "block", "priority": 9})
    assert r.status_code == 200
    assert r.json()["rule"]["action"] == "block"
    assert r.json()["rule"]["src_regex"] == "googletagmanager"

    rules = client.get("/defer-config", params={"shop": SHOP}).json()["rules"]
    assert [(x["id"], x["action"], x["priority"]) for x in rules] == [("ga", "block", 9)]

    r = client.delete("/defer-config/rules/ga", params={"shop": SHOP})
    assert r.json() == {"ok": True, "deleted": "ga", "rules": 0, "shop": SHOP}


def test_missing_rule_is_404(client):
    assert client.put("/defer-config/rules/nope", params={"shop": SHOP}, json={"priority": 1}).status_code == 404
    assert client.delete("/defer-config/rules/nope", params={"shop": SHOP}).status_code == 404


# ----------------------------------------------------------------------------
# admin
# ----------------------------------------------------------------------------

def test_admin_routes_need_key(client, admin_key):
    assert client.get("/defer-config/all").status_code == 403
    assert client.get("/defer-config/all", params={"admin_key": "wrong"}).json()["error"] == "Forbidden - Invalid admin key"


def test_admin_routes_closed_when_no_key_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    assert client.get("/defer-config/all", params={"admin_key": ""}).status_code == 403


def test_list_all_configs(client, store, admin_key):
    client.post("/defer-config", params={"shop": SHOP}, json={"rules": [GA]})
    store.add_shop("other.myshopify.com")

    body = client.get("/defer-config/all", params={"admin_key": admin_key}).json()
    assert body["ok"] is True
    assert body["total"] == 1
    assert body["shops"][0]["shop"] == SHOP
    assert body["shops"][0]["config"]["rules"][0]["id"] == "ga"


def test_monthly_usage_reset(client, store, admin_key):
    store.add_shop(SHOP)
    client.get("/defer-config", params={"shop": SHOP})
    r = client.post("/defer-config/usage/reset-monthly", params={"admin_key": admin_key})
    assert r.json() == {"ok": True, "shops_reset": 1}
    assert store.shops[SHOP]["usage"]["requests_this_month"] == 0
    assert store.shops[SHOP]["usage"]["total_requests"] == 1


# ----------------------------------------------------------------------------
# storefront delivery
# ----------------------------------------------------------------------------

def test_loader_script_headers_and_body(client):
    client.post("/defer-config", params={"shop": SHOP}, json={"rules": [GA]})
    r = client.get("/defer-config/loader.js", params={"shop": SHOP})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/javascript")
    assert r.headers["cache-control"] == "public, max-age=3600"
    assert r.headers["access-control-allow-origin"] == f"https://{SHOP}"
    assert '"i":"ga"' in r.text


def test_loader_script_inert_when_disabled(client):
    client.post("/defer-config", params={"shop": SHOP}, json={"enabled": False, "rules": [GA]})
    r = client.get("/defer-config/loader.js", params={"shop": SHOP})
    assert r.text == DISABLED_LOADER


def test_loader_script_failure_returns_js_comment(client, monkeypatch):
    def broken(cfg):
        raise RuntimeError("template missing")

    monkeypatch.setattr(router_module, "render_loader", broken)
    r = client.get("/defer-config/loader.js", params={"shop": SHOP})
    assert r.status_code == 500
    assert r.text == "//Error generating loader script"


def test_config_json(client):
    client.post("/defer-config", params={"shop": SHOP}, json={"release_after_ms": 900, "rules": [GA]})
    r = client.get("/defer-config/config.json", params={"shop": SHOP})
    assert r.headers["cache-control"] == "public, max-age=300"
    assert r.headers["access-control-allow-origin"] == f"https://{SHOP}"
    assert r.json()["release_after_ms"] == 900
    assert "ok" not in r.json()


# ----------------------------------------------------------------------------
# preview
# ----------------------------------------------------------------------------

PAGE = """
<html><head>
<script src="https://www.googletagmanager.com/gtm.js?id=GTM-1"></script>
<script src="https://cdn.shopify.com/s/files/1/theme.js"></script>
</head><body><p>hi</p></body></html>
"""


def test_preview_with_inline_html(client):
    client.post("/defer-config", params={"shop": SHOP}, json={"rules": [GA]})
    r = client.post("/defer-config/preview", params={"shop": SHOP}, json={"path": "/products/widget", "html": PAGE})
    body = r.json()
    assert r.status_code == 200
    assert body["template"] == "product"
    assert body["counts"] == {"passthrough": 1, "blocked": 0, "queued": 1}
    assert body["release"]["reason"] == "timer"


def test_preview_with_unsaved_config(client):
    r = client.post("/defer-config/preview", params={"shop": SHOP}, json={
        "path": "/",
        "html": PAGE,
        "config": {"rules": [{**GA, "action": "block"}]},
    })
    assert r.json()["counts"]["blocked"] == 1


def test_preview_rejects_relative_path(client):
    r = client.post("/defer-config/preview", params={"shop": SHOP}, json={"path": "products/x", "html": PAGE})
    assert r.status_code == 400


def test_preview_fetch_failure_is_bad_gateway(client, monkeypatch):
    async def unreachable(shop, path):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(router_module, "fetch_storefront_page", unreachable)
    r = client.post("/defer-config/preview", params={"shop": SHOP}, json={"path": "/"})
    assert r.status_code == 502
    assert r.json()["error"].startswith("Could not fetch storefront page")


# ----------------------------------------------------------------------------
# analysis hand-off
# ----------------------------------------------------------------------------

class FakeJsDeferClient:
    def __init__(self, peek=None):
        self.queued = []
        self._peek = peek

    async def queue_bulk_analysis(self, shop, templates):
        self.queued.append((shop, templates))
        return {"success": True, "results": [], "successCount": len(templates), "totalCount": len(templates)}

    async def peek_results(self):
        if self._peek is None:
            return {"success": False, "error": "No results available"}
        return {"success": True, "result": self._peek}


def test_queue_analysis(client, override_js_client):
    fake = FakeJsDeferClient()
    override_js_client(fake)
    templates = [{"template": "product", "url": f"https://{SHOP}/products/a"}]
    r = client.post("/defer-config/analysis/queue", params={"shop": SHOP}, json={"templates": templates})
    assert r.json()["ok"] is True
    assert fake.queued == [(SHOP, templates)]


@pytest.mark.parametrize("templates", [[], "product", [{"template": "product"}]])
def test_queue_analysis_validation(client, override_js_client, templates):
    override_js_client(FakeJsDeferClient())
    r = client.post("/defer-config/analysis/queue", params={"shop": SHOP}, json={"templates": templates})
    assert r.status_code == 400


COMPLETED = {
    "status": "completed",
    "jobId": "job-1",
    "shop": SHOP,
    "template": "product",
    "js_files": [{"url": "https://cdn.example.com/reviews.js"}],
    "defer_recommendations": {"defer": {"files": [{"url": "https://cdn.example.com/reviews.js"}]}},
}


def test_poll_analysis_saves_rules(client, store, admin_key, override_js_client):
    override_js_client(FakeJsDeferClient(peek=COMPLETED))
    r = client.post("/defer-config/analysis/poll", params={"admin_key": admin_key})
    assert r.json()["ok"] is True
    assert r.json()["rulesApplied"] == 1
    assert store.shops[SHOP]["defer_config"]["rules"][0]["id"] == "product-defer-0"


def test_analysis_result_push(client, store, admin_key):
    r = client.post("/defer-config/analysis/result", params={"admin_key": admin_key}, json=COMPLETED)
    assert r.json() == {"ok": True, "success": True, "rulesApplied": 1}
    assert store.shops[SHOP]["template_groups"]["product"]["psi_analyzed"] is True


def test_analysis_result_skips_failed_jobs(client, store, admin_key):
    r = client.post("/defer-config/analysis/result", params={"admin_key": admin_key},
                    json={**COMPLETED, "status": "failed"})
    assert r.json() == {"ok": True, "skipped": True, "status": "failed"}
    assert SHOP not in store.shops


def test_analysis_result_requires_admin(client, admin_key):
    assert client.post("/defer-config/analysis/result", json=COMPLETED).status_code == 403


# ----------------------------------------------------------------------------
# pattern portability and payload types
# ----------------------------------------------------------------------------

@pytest.mark.parametrize("pattern", ["(?P<h>gtm)", "(?i)gtm", r"gtm\Z", "gt++m"])
def test_python_only_patterns_are_rejected(client, pattern):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"rules": [{"id": "p", "src_regex": pattern}]})
    assert r.status_code == 400
    assert r.json()["error"].startswith("Rule 1: Invalid regex pattern - ")


def test_browser_named_groups_are_accepted_and_previewed(client):
    rules = [{"id": "named", "src_regex": "(?<h>googletagmanager)"}]
    r = client.post("/defer-config", params={"shop": SHOP}, json={"rules": rules})
    assert r.status_code == 200

    r = client.post("/defer-config/preview", params={"shop": SHOP}, json={"path": "/", "html": PAGE})
    assert r.json()["counts"]["queued"] == 1


@pytest.mark.parametrize("rule", [
    {"id": "x", "src_regex": 123},
    {"id": 7, "src_regex": "gtm"},
    {"id": "x", "src_regex": ["gtm"]},
])
def test_non_string_rule_fields_are_rejected(client, rule):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"rules": [rule]})
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": "Rule 1: id and src_regex must be strings"}


def test_single_rule_with_non_string_pattern_is_rejected(client):
    r = client.post("/defer-config/rules", params={"shop": SHOP}, json={"id": "x", "src_regex": 123})
    assert r.status_code == 400
    assert r.json()["ok"] is False


@pytest.mark.parametrize("value", ["false", 0, 1, "yes"])
def test_enabled_must_be_boolean(client, value):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"enabled": value, "rules": [GA]})
    assert r.status_code == 400
    assert r.json()["error"] == "enabled must be a boolean"


def test_enabled_false_is_stored(client):
    r = client.post("/defer-config", params={"shop": SHOP}, json={"enabled": False, "rules": [GA]})
    assert r.json()["enabled"] is False
