"""Payment dispute routes"""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from database import get_db
from routes.common import get_current_user_id, require_admin, read_json, int_field, str_field, serialize_dispute
from services.dispute_resolution import DisputeResolutionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/disputes", tags=["disputes"])


@router.post("")
async def create_dispute(
    request: Request,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    body = await read_json(request)
    dispute = DisputeResolutionService.create_dispute(
        db,
        int_field(body, "submission_id"),
        user_id,
        str_field(body, "dispute_type"),
        str_field(body, "description"),
    )
    return {"success": True, "dispute": serialize_dispute(dispute)}


@router.get("")
async def list_my_disputes(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return {"disputes": [serialize_dispute(d) for d in DisputeResolutionService.list_disputes(db, user_id=user_id)]}


@router.post("/{dispute_id}/review")
async def start_review(
    dispute_id: int,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    dispute = DisputeResolutionService.start_review(db, dispute_id, admin["admin_id"])
    return {"success": True, "dispute": serialize_dispute(dispute)}


@router.post("/{dispute_id}/resolve")
async def resolve_dispute(
    dispute_id: int,
    request: Request,
    admin: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    body = await read_json(request)
    result = DisputeResolutionService.resolve_dispute(
        db,
        dispute_id,
        str_field(body, "status"),
        str_field(body, "resolution"),
        admin["admin_id"],
    )
    return {"success": True, "changed": result.changed, "dispute": serialize_dispute(result.dispute)}
