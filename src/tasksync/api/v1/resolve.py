"""Decision preview for a single entity."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.tasksync.api.deps import build_resolve_options, get_app_settings, get_clock, get_engine
from src.tasksync.config import Settings
from src.tasksync.core.security import require_cron_secret
from src.tasksync.sync.engine import SyncEngine
from src.tasksync.sync.schemas import ChangeEvent, Source, utcnow

router = APIRouter(prefix="/sync", tags=["resolve"], dependencies=[Depends(require_cron_secret)])

_ENTITY_SETS = {
    Source.BC: "projectTasks",
    Source.PLANNER: "plannerTask",
    Source.PREMIUM: "msdyn_projecttasks",
}


class ResolveRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source: Source
    entity_id: str
    change_type: str = "updated"
    dry_run: bool = True
    prefer_bc: bool | None = None
    grace_ms: int | None = None


@router.post("/resolve")
async def resolve_entity(
    payload: ResolveRequest,
    request: Request,
    engine: SyncEngine = Depends(get_engine),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """Resolve one entity as if a change notification had just arrived.

    With ``dryRun`` (the default) the decision is returned and nothing is
    written; otherwise the decision is applied.
    """
    entity_set = _ENTITY_SETS[payload.source]
    if payload.source == Source.PREMIUM:
        entity_set = settings.DATAVERSE_TASK_ENTITY_SET
    event = ChangeEvent(
        source=payload.source,
        entity_set=entity_set,
        entity_id=payload.entity_id,
        change_type=payload.change_type,
        received_at=utcnow(get_clock(request)),
    )
    options = build_resolve_options(request, settings, dry_run=payload.dry_run)
    overrides = {k: v for k, v in (("prefer_bc", payload.prefer_bc), ("grace_ms", payload.grace_ms)) if v is not None}
    if overrides:
        options = options.model_copy(update=overrides)

    if payload.dry_run:
        decision = await engine.preview(event, options)
        return {"ok": True, "decision": decision.model_dump(mode="json", by_alias=True)}

    result = await engine.sync_event(event, options)
    return {"ok": result.error is None, "result": result.model_dump(mode="json", by_alias=True)}
