# ──────────────────────────────────────────────────────────────────────────────
# File: services/admin_router.py
# ──────────────────────────────────────────────────────────────────────────────
"""
Administrative endpoints: embedding migration, index re-sync and runtime
settings. Every route requires the X-Admin-Key header.
"""
from __future__ import annotations
import logging
from dataclasses import asdict
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from services.app_config_service import AppConfigService
from services.auth_service import require_admin
from services.dependencies import get_config_service, get_migration_service
from services.migration_service import MigrationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class SyncRequest(BaseModel):
    table: Optional[Literal["memory", "posts"]] = None
    batch_size: int = 100
    prune: bool = False


@router.get("/migration-status")
def migration_status(
    target_model: Optional[str] = None,
    migration: MigrationService = Depends(get_migration_service),
):
    return {"success": True, **migration.migration_status(target_model)}


@router.post("/migrate/{table}")
async def migrate_table(
    table: Literal["memory", "posts"],
    batch_size: int = Query(10, ge=1, le=200),
    offset: int = Query(0, ge=0),
    migration: MigrationService = Depends(get_migration_service),
):
    result = await migration.migrate_batch(table, batch_size=batch_size, offset=offset)
    return {"success": True, **result.to_dict()}


@router.post("/migrate-all")
async def migrate_all(
    batch_size: int = Query(20, ge=1, le=200),
    migration: MigrationService = Depends(get_migration_service),
):
    results = await migration.migrate_all(batch_size=batch_size)
    return {"success": True, "results": results, "status": migration.migration_status()}


@router.post("/sync")
def sync_index(
    request: SyncRequest,
    migration: MigrationService = Depends(get_migration_service),
):
    result = migration.sync_index(table=request.table, batch_size=request.batch_size, prune=request.prune)
    return {"success": True, **asdict(result)}


@router.get("/config")
def get_config(config: AppConfigService = Depends(get_config_service)):
    return {"success": True, "config": config.get_config()}


@router.put("/config")
def update_config(
    updates: Dict[str, Any],
    config: AppConfigService = Depends(get_config_service),
):
    return {"success": True, "config": config.set_config(updates)}
