import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from defer_app.core import config as settings
from defer_app.core.db import init_pool, close_pool
from defer_app.core.routers import health
from defer_app.core.routers.defer_config import ApiError, router as defer_config_router
from defer_app.services.store import ensure_schema

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_pool()
    await ensure_schema()
    yield
    await close_pool()


app = FastAPI(lifespan=lifespan)

# loader.js and config.json set their own per-shop Access-Control-Allow-Origin
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"https://([a-z0-9-]+\.myshopify\.com|admin\.shopify\.com)",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.detail})


# -------------------------------
# Router registration
# -------------------------------

app.include_router(defer_config_router)
app.include_router(health.router)

@app.get("/healthz")
def healthz():
    return {"status": "ok"}

@app.get("/whoami")
def whoami():
    return {"module": "defer_app.app", "build_id": settings.BUILD_ID}

for r in app.routes:
    logger.debug("ROUTE %s %s", getattr(r, "path", ""), getattr(r, "methods", ""))


if __name__ == "__main__":
    uvicorn.run("defer_app.app:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
