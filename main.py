from __future__ import annotations

from fastapi import FastAPI

from airlite import __version__
from airlite.logging_config import setup_logging
from airlite.routers.admin import router as admin_router
from airlite.routers.auth import get_settings

setup_logging(get_settings().log_level)

app = FastAPI(title="airlite-patcher", version=__version__)

app.include_router(admin_router)


@app.get("/health")
def health():
    return {"ok": True}
