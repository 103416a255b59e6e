from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from rdtrack import notifier, services
from rdtrack.db import init_db, session_scope
from rdtrack.lifecycle import (
    Actor, LifecycleError, Stage, change_stage, normalize_stage, set_stage_target,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def rdtrack_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "rdtrack",
    instructions=(
        "rdtrack tracks customer-driven R&D change requests through the stages "
        "IDEATION, REVIEW, CONFIRM, PROJECT, RELEASE (or REJECTED). Start with "
        "get_transition_stats() or list_requests() to browse, then get_request(id) "
        "for full details including stage history and stage targets."
    ),
    lifespan=rdtrack_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _actor(user_id: str | None, name: str | None) -> Actor:
    return Actor(user_id=user_id or "mcp", name=name or "MCP client")


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("rdtrack://overview")
def rdtrack_overview() -> str:
    """Overview of rdtrack: data model, stages and scores."""
    return json.dumps({
        "system": "rdtrack: R&D request intake and tracking",
        "data_model": {
            "request": "Customer-driven change request submitted by sales. Has keywords, tech areas, attachments and RD group links.",
            "stage_history": "Append-only stage intervals. Exactly one open interval per request, matching current_stage.",
            "stage_target": "Planned completion date per (request, stage); every change is kept in stage_target_history.",
        },
        "stages": [str(s) for s in Stage],
        "scores": {
            "rice_score": "reach × impact × confidence / effort; null if any factor missing.",
            "customer_influence_score": "0-10 sum of revenue tier, KOL weight, reuse, strategic alignment and tender requirement.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Requests
# ---------------------------------------------------------------------------


@mcp.tool()
def list_requests(
    product_areas: str | None = None, stages: str | None = None,
    q: str | None = None, keyword: str | None = None, limit: int = 50,
) -> dict:
    """List requests ordered by customer deadline (soonest first).

    Args:
        product_areas: Comma-separated, e.g. "C_ARM,MAMMO".
        stages: Comma-separated from IDEATION, REVIEW, CONFIRM, PROJECT, RELEASE, REJECTED.
        q: Substring match on title, customer text and sales summary.
        keyword: Substring match on request keywords.
        limit: Max results (default 50, max 500).
    """
    with session_scope() as session:
        try:
            items, total = services.query_requests(
                session, product_areas=product_areas, stages=stages, q=q, keyword=keyword,
                limit=max(1, min(limit, 500)),
            )
        except LifecycleError as exc:
            return {"error": str(exc)}
        return {"items": items, "total": total}


@mcp.tool()
def get_request(request_id: str) -> dict:
    """Get full details for a request including stage history and stage targets."""
    with session_scope() as session:
        try:
            return services.request_detail(services.get_request(session, request_id))
        except LifecycleError as exc:
            return {"error": str(exc)}


@mcp.tool()
def change_request_stage(request_id: str, stage: str) -> dict:
    """Move a request to another stage. COMPLETE is accepted as RELEASE."""
    with session_scope() as session:
        try:
            req = services.get_request(session, request_id)
            if normalize_stage(stage) == req.current_stage:
                return {"error": f"Request is already in {req.current_stage}"}
            change_stage(session, req, stage)
            session.commit()
        except LifecycleError as exc:
            session.rollback()
            return {"error": str(exc)}
        session.expire(req)
        return services.request_detail(req)


@mcp.tool()
def set_request_stage_target(
    request_id: str, stage: str, target_date: str,
    user_id: str | None = None, user_name: str | None = None,
) -> dict:
    """Set the planned completion date (ISO date) for a stage of a request."""
    with session_scope() as session:
        try:
            actor = _actor(user_id, user_name)
            result = set_stage_target(session, request_id, stage, target_date, actor)
            req = services.get_request(session, request_id)
        except LifecycleError as exc:
            return {"error": str(exc)}
        notifier.notify_event(
            notifier.EventType.STAGE_TARGET_UPDATED, services.target_event_payload(req, result, actor),
        )
        return result


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_transition_stats(days: int = 7) -> dict:
    """Stage transitions in the last N days (1-365), latest per request per bucket."""
    with session_scope() as session:
        return services.stage_transition_stats(session, days)


@mcp.tool()
def get_high_value_requests() -> list[dict]:
    """Top 20% of requests by expected revenue, soonest deadline first."""
    with session_scope() as session:
        return services.high_value_requests(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the rdtrack MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
