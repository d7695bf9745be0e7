"""Backup catalog and restore routes."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from crm_cache.core.container import container
from crm_cache.core.logging import get_logger
from crm_cache.services.backup import BackupRecoveryService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/backups", tags=["backups"])


class BackupCreateRequest(BaseModel):
    name: Optional[str] = None


class RestoreRequest(BaseModel):
    dry_run: bool = False
    # The HTTP caller confirms by sending the request
    skip_confirmation: bool = True
    selective_restore: Optional[List[str]] = None


@router.get("")
async def list_backups(
    backup: BackupRecoveryService = Depends(lambda: container.backup())
):
    backups = await backup.get_backup_list()
    return {"success": True, "backups": backups, "count": len(backups)}


@router.post("")
async def create_backup(
    request: Optional[BackupCreateRequest] = None,
    backup: BackupRecoveryService = Depends(lambda: container.backup())
):
    """Create a full backup now."""
    name = request.name if request else None
    return await backup.create_full_backup(name)


@router.get("/health")
async def backup_health(
    backup: BackupRecoveryService = Depends(lambda: container.backup())
):
    health = await backup.get_system_health()
    if "error" in health:
        raise HTTPException(status_code=503, detail=health["error"])
    return health


@router.post("/cleanup")
async def cleanup_backups(
    backup: BackupRecoveryService = Depends(lambda: container.backup())
):
    """Apply the retention policy now."""
    return {"success": True, "deleted": await backup.cleanup_old_backups()}


@router.post("/{backup_id}/restore")
async def restore_backup(
    backup_id: str,
    request: Optional[RestoreRequest] = None,
    backup: BackupRecoveryService = Depends(lambda: container.backup())
):
    request = request or RestoreRequest()
    return await backup.restore_from_backup(
        backup_id,
        dry_run=request.dry_run,
        skip_confirmation=request.skip_confirmation,
        selective_restore=request.selective_restore,
    )


@router.delete("/{backup_id}")
async def delete_backup(
    backup_id: str,
    backup: BackupRecoveryService = Depends(lambda: container.backup())
):
    return await backup.delete_backup(backup_id)
