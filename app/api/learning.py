"""
Learning endpoints (admin only).

  POST /v1/learning/consolidate — run one consolidation cycle now
  GET  /v1/learning/insights    — stage counts, confidence, perfection flags

The scheduled path is `python -m app.jobs.consolidate`; this trigger exists
for operators and shares the same non-overlap guard.
"""

from fastapi import APIRouter, Depends, HTTPException

from app.jobs.consolidate import get_learning_insights, run_learning_consolidation
from app.middleware.auth import require_admin
from app.models.database import get_store
from app.models.store import EvidenceStore

router = APIRouter(prefix="/v1/learning", tags=["learning"], dependencies=[Depends(require_admin)])


@router.post("/consolidate")
async def consolidate(store: EvidenceStore = Depends(get_store)):
    report = await run_learning_consolidation(store)
    if report.in_progress:
        raise HTTPException(status_code=409, detail="A consolidation run is already in progress")
    if not report.success:
        raise HTTPException(status_code=500, detail=f"Consolidation failed: {report.error}")
    return report.to_dict()


@router.get("/insights")
async def insights(store: EvidenceStore = Depends(get_store)):
    return await get_learning_insights(store)
