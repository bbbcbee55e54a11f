"""Operational endpoints for breakers, rate limits and the event bus."""

from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict

from asdf_gateway.app.core.context import ResilienceContext
from asdf_gateway.app.middleware.auth import require_admin

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class CircuitStateUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: Literal["open", "closed"]


def get_resilience(request: Request) -> ResilienceContext:
    return request.app.state.resilience


# ---------------------------------------------------------------------------
# Circuits
# ---------------------------------------------------------------------------

@router.get("/circuits")
async def list_circuits(ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    return ctx.registry.get_all_circuits()


@router.get("/circuits/stats")
async def circuit_stats(ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    return ctx.registry.get_stats()


@router.get("/circuits/{name}")
async def get_circuit(name: str, ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    status = ctx.registry.get_circuit_status(name)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Circuit not found: {name}")
    return status


@router.post("/circuits/{name}/state")
async def force_circuit_state(
    name: str,
    body: CircuitStateUpdate,
    ctx: ResilienceContext = Depends(get_resilience),
) -> dict[str, Any]:
    if not ctx.registry.force_circuit_state(name, body.state):
        raise HTTPException(status_code=404, detail=f"Circuit not found: {name}")
    return ctx.registry.get_circuit_status(name)


@router.post("/circuits/{name}/reset")
async def reset_circuit(name: str, ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    if not ctx.registry.reset_circuit(name):
        raise HTTPException(status_code=404, detail=f"Circuit not found: {name}")
    return ctx.registry.get_circuit_status(name)


@router.delete("/circuits/{name}")
async def remove_circuit(name: str, ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    if not ctx.registry.remove_circuit(name):
        raise HTTPException(status_code=404, detail=f"Circuit not found: {name}")
    return {"removed": name}


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------

@router.get("/rate-limit/stats")
async def rate_limit_stats(ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    return ctx.rate_limiter.get_stats()


@router.get("/rate-limit/bans")
async def banned_list(ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    return ctx.rate_limiter.get_banned_list()


@router.get("/rate-limit/violations/{identifier}")
async def violation_details(identifier: str, ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    details = ctx.rate_limiter.get_violation_details(identifier)
    if details is None:
        raise HTTPException(status_code=404, detail="No violations recorded")
    details["ban"] = ctx.rate_limiter.is_banned(identifier).to_dict()
    return details


@router.delete("/rate-limit/bans/{identifier}")
async def remove_ban(identifier: str, ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    status = ctx.rate_limiter.is_banned(identifier)
    had_record = ctx.rate_limiter.get_violation_details(identifier) is not None
    if not status.banned and not had_record:
        raise HTTPException(status_code=404, detail="Identifier is not banned")
    permanent_lifted = ctx.rate_limiter.remove_ban(identifier)
    return {"unbanned": True, "permanent": permanent_lifted}


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

@router.get("/events/history")
async def event_history(
    limit: int = 50,
    event_type: Optional[str] = None,
    since: Optional[float] = None,
    ctx: ResilienceContext = Depends(get_resilience),
) -> list[dict[str, Any]]:
    events = ctx.event_bus.get_event_history(limit=limit, event_type=event_type, since=since)
    return [event.to_dict() for event in events]


@router.get("/events/metrics")
async def event_metrics(ctx: ResilienceContext = Depends(get_resilience)) -> dict[str, Any]:
    return ctx.event_bus.get_metrics()
