# defer_app/services/store.py
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from defer_app.core.db import get_conn
from defer_app.engine.models import DeferConfig

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE SCHEMA IF NOT EXISTS rl;
CREATE TABLE IF NOT EXISTS rl.shops (
    shop            TEXT PRIMARY KEY,
    access_token    TEXT,
    short_id        TEXT,
    api_token       TEXT,
    connected_at    TIMESTAMPTZ,
    script_injected BOOLEAN NOT NULL DEFAULT FALSE,
    plan            TEXT NOT NULL DEFAULT 'free',
    defer_config    JSONB,
    template_groups JSONB NOT NULL DEFAULT '{}'::jsonb,
    usage           JSONB NOT NULL DEFAULT '{"total_requests": 0, "requests_this_month": 0}'::jsonb,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS shops_last_request_idx ON rl.shops ((usage->>'last_request'));
"""


class ShopStore:
    """Persistence for per-shop defer configuration, usage and template analysis."""

    async def get_shop(self, shop: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def get_config(self, shop: str) -> Optional[DeferConfig]:
        record = await self.get_shop(shop)
        if not record or not record.get("defer_config"):
            return None
        return DeferConfig.model_validate(record["defer_config"])

    async def save_config(self, shop: str, config: DeferConfig) -> DeferConfig:
        raise NotImplementedError

    async def reset_config(self, shop: str) -> None:
        raise NotImplementedError

    async def list_configs(self, limit: int = 100) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def record_usage(self, shop: str) -> bool:
        raise NotImplementedError

    async def reset_monthly_usage(self) -> int:
        raise NotImplementedError

    async def save_template_analysis(self, shop: str, template: str, analysis: Dict[str, Any]) -> None:
        raise NotImplementedError


class PostgresShopStore(ShopStore):

    async def get_shop(self, shop: str) -> Optional[Dict[str, Any]]:
        async with get_conn() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT shop, defer_config, usage, connected_at, template_groups, plan
                    FROM rl.shops
                    WHERE shop = %s
                    """,
                    (shop,),
                )
                return await cur.fetchone()

    async def save_config(self, shop: str, config: DeferConfig) -> DeferConfig:
        config = config.model_copy(update={"updated_at": datetime.utcnow()})
        async with get_conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO rl.shops (shop, defer_config)
                    VALUES (%s, %s)
                    ON CONFLICT (shop) DO UPDATE
                    SET defer_config = EXCLUDED.defer_config,
                        updated_at = NOW()
                    """,
                    (shop, Jsonb(config.to_storage())),
                )
                await conn.commit()
        logger.info(
            f"Updated defer config for {shop}: rules={len(config.rules)} "
            f"enabled={config.enabled} release_after_ms={config.release_after_ms}"
        )
        return config

    async def reset_config(self, shop: str) -> None:
        async with get_conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "UPDATE rl.shops SET defer_config = NULL, updated_at = NOW() WHERE shop = %s",
                    (shop,),
                )
                await conn.commit()

    async def list_configs(self, limit: int = 100) -> List[Dict[str, Any]]:
        async with get_conn() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT shop, defer_config AS config, usage, connected_at
                    FROM rl.shops
                    WHERE defer_config IS NOT NULL
                    ORDER BY updated_at DESC
                    LIMIT %s
                    """,
                    (limit,),
                )
                return await cur.fetchall()

    async def record_usage(self, shop: str) -> bool:
        async with get_conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    UPDATE rl.shops
                    SET usage = jsonb_build_object(
                            'total_requests', COALESCE((usage->>'total_requests')::int, 0) + 1,
                            'requests_this_month', COALESCE((usage->>'requests_this_month')::int, 0) + 1,
                            'last_request', to_jsonb(NOW())
                        )
                    WHERE shop = %s
                    """,
                    (shop,),
                )
                await conn.commit()
                return cur.rowcount > 0

    async def reset_monthly_usage(self) -> int:
        async with get_conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "UPDATE rl.shops SET usage = jsonb_set(usage, '{requests_this_month}', '0'::jsonb)"
                )
                await conn.commit()
                return cur.rowcount

    async def save_template_analysis(self, shop: str, template: str, analysis: Dict[str, Any]) -> None:
        async with get_conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO rl.shops (shop, template_groups)
                    VALUES (%s, jsonb_build_object(%s::text, %s::jsonb))
                    ON CONFLICT (shop) DO UPDATE
                    SET template_groups = COALESCE(rl.shops.template_groups, '{}'::jsonb)
                                          || jsonb_build_object(%s::text, %s::jsonb),
                        updated_at = NOW()
                    """,
                    (shop, template, Jsonb(analysis), template, Jsonb(analysis)),
                )
                await conn.commit()


async def ensure_schema() -> None:
    async with get_conn() as conn:
        async with conn.cursor() as cur:
            await cur.execute(SCHEMA_SQL)
            await conn.commit()
