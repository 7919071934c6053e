import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from defer_app.app import app
from defer_app.core.routers.defer_config import get_js_defer_client, get_store
from defer_app.engine.dom import Window
from defer_app.engine.models import DeferConfig, Rule
from defer_app.services.store import ShopStore

SHOP = "test-store.myshopify.com"


class InMemoryShopStore(ShopStore):
    def __init__(self):
        self.shops: Dict[str, Dict[str, Any]] = {}

    def add_shop(self, shop: str, defer_config: Optional[Dict[str, Any]] = None) -> None:
        self.shops[shop] = {
            "shop": shop,
            "defer_config": defer_config,
            "usage": {"total_requests": 0, "requests_this_month": 0},
            "connected_at": None,
            "template_groups": {},
        }

    async def get_shop(self, shop: str) -> Optional[Dict[str, Any]]:
        record = self.shops.get(shop)
        return copy.deepcopy(record) if record else None

    async def save_config(self, shop: str, config: DeferConfig) -> DeferConfig:
        config = config.model_copy(update={"updated_at": datetime.utcnow()})
        if shop not in self.shops:
            self.add_shop(shop)
        self.shops[shop]["defer_config"] = config.to_storage()
        return config

    async def reset_config(self, shop: str) -> None:
        if shop in self.shops:
            self.shops[shop]["defer_config"] = None

    async def list_configs(self, limit: int = 100) -> List[Dict[str, Any]]:
        rows = [
            {"shop": s["shop"], "config": s["defer_config"], "usage": s["usage"], "connected_at": s["connected_at"]}
            for s in self.shops.values()
            if s["defer_config"]
        ]
        return rows[:limit]

    async def record_usage(self, shop: str) -> bool:
        record = self.shops.get(shop)
        if record is None:
            return False
        record["usage"]["total_requests"] += 1
        record["usage"]["requests_this_month"] += 1
        return True

    async def reset_monthly_usage(self) -> int:
        for record in self.shops.values():
            record["usage"]["requests_this_month"] = 0
        return len(self.shops)

    async def save_template_analysis(self, shop: str, template: str, analysis: Dict[str, Any]) -> None:
        if shop not in self.shops:
            self.add_shop(shop)
        self.shops[shop]["template_groups"][template] = analysis


@pytest.fixture
def store():
    return InMemoryShopStore()


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def override_js_client():
    def _override(js_client):
        app.dependency_overrides[get_js_defer_client] = lambda: js_client
    return _override


def make_config(*rules: Dict[str, Any], release_after_ms: int = 2000, enabled: bool = True) -> DeferConfig:
    return DeferConfig(
        release_after_ms=release_after_ms,
        enabled=enabled,
        rules=[Rule.model_validate(r) for r in rules],
    )


def add_script(window: Window, src: Optional[str] = None, parent=None, **attrs):
    """Insert a script the way the parser or a theme app would."""
    document = window.document
    attributes = dict(attrs)
    if src is not None:
        attributes["src"] = src
    script = document.create_element("script", attributes)
    (parent or document.head).append_child(script)
    return script
