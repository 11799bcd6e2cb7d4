# airlite/routers/admin.py
from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field

from airlite.errors import (
    AirLiteError,
    BuildFailed,
    ExternalToolFailure,
    FormatError,
    IntegrityError,
    StoreCorruption,
    StoreLocked,
    VersionOrderError,
)
from airlite.routers.auth import get_settings, require_admin
from airlite.services.builder import PatchBuilder
from airlite.services.storage import VersionStore
from airlite.services.verifier import PatchVerifier
from airlite.settings import Settings

log = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

# orden importa: subclases antes que AirLiteError
STATUS_BY_ERROR = [
    (VersionOrderError, 400),
    (FormatError, 400),
    (IntegrityError, 422),
    (StoreLocked, 409),
    (BuildFailed, 502),
    (ExternalToolFailure, 502),
    (StoreCorruption, 500),
    (AirLiteError, 500),
]


class BuildIn(BaseModel):
    patch_version: Optional[int] = Field(default=None, ge=0)
    entry: Optional[str] = None


def http_error(e: AirLiteError) -> HTTPException:
    for cls, status in STATUS_BY_ERROR:
        if isinstance(e, cls):
            return HTTPException(status_code=status, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def get_builder_factory() -> Callable[[Settings, str, Optional[str]], PatchBuilder]:
    return PatchBuilder.from_settings


def open_store(platform: str, settings: Settings) -> VersionStore:
    if platform not in settings.platforms:
        raise HTTPException(status_code=404, detail=f"Unknown platform {platform}")
    try:
        return VersionStore(settings.patch_root, platform)
    except AirLiteError as e:
        raise http_error(e)


@router.get("/{platform}/versions")
def list_versions(platform: str, settings: Settings = Depends(get_settings)):
    store = open_store(platform, settings)
    try:
        return store.describe()
    except AirLiteError as e:
        raise http_error(e)


@router.post("/{platform}/build")
def build(
    platform: str,
    data: BuildIn,
    settings: Settings = Depends(get_settings),
    factory=Depends(get_builder_factory),
):
    open_store(platform, settings)
    builder = factory(settings, platform, data.entry)
    try:
        result = builder.build_new_patch(patch_version=data.patch_version)
    except BuildFailed as e:
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "failures": {str(v): str(err) for v, err in e.failures.items()}},
        )
    except AirLiteError as e:
        raise http_error(e)
    return {"status": "ok", "build": result.as_dict()}


@router.get("/{platform}/verify")
def verify_store(platform: str, settings: Settings = Depends(get_settings)):
    store = open_store(platform, settings)
    try:
        report = PatchVerifier().verify_store(store)
    except AirLiteError as e:
        raise http_error(e)
    return report.as_dict()


@router.post("/verify")
async def verify_upload(
    old: UploadFile = File(...),
    patch: UploadFile = File(...),
    expected: UploadFile = File(...),
):
    old_bytes = await old.read()
    patch_bytes = await patch.read()
    expected_bytes = await expected.read()

    try:
        version = PatchVerifier().verify_bytes(
            old_bytes, patch_bytes, expected_bytes, name=patch.filename or "patch"
        )
    except AirLiteError as e:
        raise http_error(e)
    return {"status": "ok", "version": version}
