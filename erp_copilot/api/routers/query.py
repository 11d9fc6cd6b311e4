"""POST /query -- tool-call endpoint, plus grounding check, full turn and cache admin."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from erp_copilot.copilot.service import CopilotService, get_service
from erp_copilot.copilot.spec import ToolRequest, ToolResult, ValidateRequest, ValidationVerdict
from erp_copilot.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


class AskRequest(BaseModel):
    question: str = Field(..., min_length=3, max_length=500, description="Natural-language business question")


class AskResponse(BaseModel):
    question: str
    answer: str
    repaired: bool
    result: ToolResult | None = None
    verdict: ValidationVerdict | None = None


class CacheStatsResponse(BaseModel):
    size: int
    max_size: int
    ttl_seconds: float
    hits: int
    misses: int
    hit_rate: float


@router.post("", response_model=ToolResult)
def query_endpoint(req: ToolRequest, service: CopilotService = Depends(get_service)):
    """Run a batch of up to five sub-queries; partial failures come back as data."""
    return service.run_intelligent_query(req)


@router.post("/validate", response_model=ValidationVerdict)
def validate_endpoint(req: ValidateRequest, service: CopilotService = Depends(get_service)):
    """Check a drafted answer against the tool result it was written from."""
    return service.validate(req.answer, req.result, req.question)


@router.post("/ask", response_model=AskResponse)
def ask_endpoint(req: AskRequest, service: CopilotService = Depends(get_service)):
    """Full turn: model proposes queries, drafts from the result, answer is grounded."""
    try:
        out = service.answer_question(req.question)
    except (RuntimeError, NotImplementedError) as exc:
        logger.exception("answer_question failed")
        raise HTTPException(status_code=502, detail=str(exc))
    return AskResponse(
        question=out.question,
        answer=out.answer,
        repaired=out.repaired,
        result=out.tool_result,
        verdict=out.verdict,
    )


@router.get("/cache/stats", response_model=CacheStatsResponse)
def cache_stats_endpoint(service: CopilotService = Depends(get_service)):
    """Return query cache statistics."""
    return CacheStatsResponse(**service.cache.stats())


@router.post("/cache/clear")
def cache_clear_endpoint(service: CopilotService = Depends(get_service)):
    """Flush the query cache."""
    removed = service.cache.invalidate()
    return {"cleared": removed}
