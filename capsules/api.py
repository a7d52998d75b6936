# capsules/api.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from capsules.batch import BatchRunner
from capsules.errors import AnalysisError, ErrorCode
from capsules.logger import get_logger
from capsules.models import AnalysisOptions
from capsules.orchestrator import AnalysisOrchestrator

logger = get_logger("capsules.api")
router = APIRouter(prefix="/capsules", tags=["capsules"])


# -------- Schemas --------
class AnalyzeRequest(BaseModel):
    path: str = Field(..., description="Path of the file to analyze.")
    include_ai: bool = Field(False, description="Run enrichment after the base analysis.")
    force: bool = Field(False, description="Bypass cached capsules (results are still cached).")
    deep_deps: bool = Field(False, description="Sample inbound references from the workspace.")


class AnalyzeResponse(BaseModel):
    capsule: Dict[str, Any]
    enriched: bool


class BatchRequest(BaseModel):
    paths: List[str] = Field(..., min_length=1)
    include_ai: bool = False
    force: bool = False
    concurrency: Optional[int] = Field(None, ge=1, le=64)


class BatchFailureModel(BaseModel):
    file: str
    error: Dict[str, Any]


class BatchResponse(BaseModel):
    results: List[Dict[str, Any]]
    failed: List[BatchFailureModel]
    stats: Dict[str, Any]


class StatsResponse(BaseModel):
    memory_hits: int
    disk_hits: int
    misses: int
    writes: int
    hit_rate: float
    memory_size: int


# -------- Helpers --------
def _orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.orchestrator


def _runner(request: Request) -> BatchRunner:
    return request.app.state.batch_runner


def _http_error(err: AnalysisError) -> HTTPException:
    detail: Dict[str, Any] = {
        "code": err.code.value,
        "message": err.to_user_message(),
    }
    if err.needs_user_action():
        detail["actions"] = err.user_actions()
        return HTTPException(status_code=400, detail=detail)
    if err.code is ErrorCode.FILE_NOT_FOUND:
        return HTTPException(status_code=404, detail=detail)
    if err.code is ErrorCode.PARSE_ERROR:
        return HTTPException(status_code=422, detail=detail)
    return HTTPException(status_code=500, detail=detail)


# -------- Endpoints --------
@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(req: AnalyzeRequest, request: Request) -> AnalyzeResponse:
    """Base analysis, optionally followed by enrichment (which never fails the request)."""
    orch = _orchestrator(request)
    opts = AnalysisOptions(force=req.force, include_ai=req.include_ai, deep_deps=req.deep_deps)
    try:
        capsule = await orch.analyze(req.path, opts)
    except AnalysisError as e:
        logger.warning("analyze request failed", ctx={"path": req.path, "code": e.code.value})
        raise _http_error(e) from e
    return AnalyzeResponse(capsule=capsule.to_dict(), enriched=capsule.is_enriched)


@router.post("/batch", response_model=BatchResponse)
async def batch(req: BatchRequest, request: Request) -> BatchResponse:
    runner = _runner(request)
    opts = AnalysisOptions(force=req.force, include_ai=req.include_ai)
    if req.include_ai:
        res = await runner.analyze_and_enhance(req.paths, options=opts)
    else:
        res = await runner.run_many(req.paths, concurrency=req.concurrency, options=opts)
    return BatchResponse(
        results=[c.to_dict() for c in res.results],
        failed=[BatchFailureModel(**f.to_dict()) for f in res.failed],
        stats={
            "total": res.stats.total,
            "succeeded": res.stats.succeeded,
            "failed": res.stats.failed,
            "duration_ms": res.stats.duration_ms,
        },
    )


@router.get("/stats", response_model=StatsResponse)
def stats(request: Request) -> StatsResponse:
    orch = _orchestrator(request)
    return StatsResponse(**orch.cache_stats().to_dict(), memory_size=orch.cache.memory_size())


@router.delete("/cache")
def clear_cache(request: Request) -> Dict[str, bool]:
    _orchestrator(request).clear_cache()
    return {"cleared": True}


@router.delete("/cache/{content_hash}")
def delete_entry(content_hash: str, request: Request) -> Dict[str, Any]:
    removed = _orchestrator(request).cache.delete(content_hash)
    return {"content_hash": content_hash, "removed": removed}
