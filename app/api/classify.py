"""
Classification endpoint — POST /v1/classify

The routing layer forwards a snapshot of the inbound request and gets back a
decision it can route on (real / safe / safe_observe / human_no_value).

Flow:
  1. Build the immutable RequestContext (header order and casing kept)
  2. classify_request() — never raises, worst case "safe"
  3. Respond
  4. After the response: behavioral observation + audit rows (BackgroundTasks)
"""

from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from app.core.context import (
    HeaderMap,
    ProtectionConfig,
    RequestContext,
    SessionAggregates,
    detect_platform_type,
)
from app.core.observer import observe_request
from app.core.pipeline import PipelineResult, classify_request, persist_audit
from app.models.database import get_store
from app.models.store import EvidenceStore

router = APIRouter(prefix="/v1", tags=["classify"])


class SessionBody(BaseModel):
    previous_requests: int = 0
    avg_time_between_requests: float | None = None
    timing_stddev_ms: float | None = None
    pages_visited: list[str] = Field(default_factory=list)
    has_scrolled: bool = False
    has_mouse_movement: bool = False
    has_focus_blur: bool = False
    viewport_changes: int = 0


class ClassifyRequest(BaseModel):
    ip: str
    headers: list[tuple[str, str]] = Field(default_factory=list)
    query_params: dict[str, str] = Field(default_factory=dict)
    path: str = "/"
    user_agent: str | None = None           # falls back to the User-Agent header
    country: str | None = None
    country_source: str | None = None
    asn: int | None = None
    platform: str | None = None             # detected from the UA when absent
    navigation_depth: int | None = None     # path depth when absent
    request_started_ms: float = 0.0
    server_received_ms: float = 0.0
    received_at: datetime | None = None
    domain_id: str = "default"
    session: SessionBody | None = None


def get_protection_config() -> ProtectionConfig:
    return ProtectionConfig.from_settings()


def build_context(body: ClassifyRequest) -> RequestContext:
    headers = HeaderMap(body.headers)
    user_agent = body.user_agent or headers.get("user-agent", "")
    referer = headers.get("referer") or headers.get("referrer")
    depth = body.navigation_depth
    if depth is None:
        depth = len([p for p in body.path.split("/") if p])

    session = None
    if body.session is not None:
        data = body.session.model_dump()
        data["pages_visited"] = tuple(data["pages_visited"])
        session = SessionAggregates(**data)

    received_at = body.received_at or datetime.now(timezone.utc)
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return RequestContext(
        ip=body.ip,
        user_agent=user_agent,
        headers=headers,
        country=body.country.upper() if body.country else None,
        country_source=body.country_source,
        query_params=dict(body.query_params),
        request_path=body.path or "/",
        platform=body.platform or detect_platform_type(user_agent),
        navigation_depth=depth,
        has_referer=bool(referer),
        request_started_ms=body.request_started_ms,
        server_received_ms=body.server_received_ms,
        received_at=received_at,
        asn=body.asn,
        domain_id=body.domain_id,
        session=session,
    )


def _response(result: PipelineResult) -> dict:
    evidence = result.evidence
    return {
        **result.assessment.to_dict(),
        "click_id": {
            "has_click_id": evidence.has_click_id,
            "network": evidence.network,
            "is_valid": evidence.is_valid,
            "entropy": round(evidence.entropy, 4),
            "length": evidence.length,
            "referer_match": evidence.referer_match,
            "validation_errors": list(evidence.validation_errors),
            "hit_count": evidence.hit_count,
        },
        "failed_layers": list(result.layers.failed_layers) if result.layers else [],
    }


@router.post("/classify")
async def classify(
    body: ClassifyRequest,
    background_tasks: BackgroundTasks,
    store: EvidenceStore = Depends(get_store),
    config: ProtectionConfig = Depends(get_protection_config),
):
    ctx = build_context(body)
    result = await classify_request(ctx, store, config)

    background_tasks.add_task(observe_request, store, ctx, result.layers, result.pipeline_passed, config)
    background_tasks.add_task(persist_audit, store, ctx, result)

    return _response(result)
