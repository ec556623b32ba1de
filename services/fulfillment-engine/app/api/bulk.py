"""
Fulfillment Engine — Bulk operation route

Per-item failures are reported in the body with HTTP 200; only a request
that fails validation as a whole is rejected.
"""
from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.bulk_ops import execute_bulk
from app.db.database import get_db
from app.schemas.bulk import BulkRequest, BulkResponse

router = APIRouter(prefix="/bulk-operations", tags=["bulk"])


@router.post("", response_model=BulkResponse)
async def run_bulk_operation(
    payload: BulkRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str | None = Header(None, alias="X-Actor-Id"),
):
    result = await execute_bulk(db, payload.type, payload.action, payload.item_ids, payload.data, actor_id)
    return BulkResponse(processed=result.processed, failed=result.failed, errors=result.errors)
