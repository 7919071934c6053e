import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from defer_app.core import config as settings
from defer_app.core.db import get_conn

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/healthz/db")
async def healthz_db():
    """Round-trip to Postgres and confirm the shops table is there, so ECS checks catch a missing migration."""
    try:
        async with get_conn() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT to_regclass('rl.shops') IS NOT NULL;")
                (has_shops,) = await cur.fetchone()
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return JSONResponse(status_code=503, content={"ok": False, "error": "database unavailable"})

    if not has_shops:
        return JSONResponse(status_code=503, content={"ok": False, "error": "rl.shops missing"})
    return {"ok": True, "build_id": settings.BUILD_ID}
