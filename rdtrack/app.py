from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import BackgroundTasks, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from rdtrack import notifier, services
from rdtrack.db import get_session, init_db
from rdtrack.importer import import_xlsx
from rdtrack.lifecycle import Actor, RequestNotFound, Role, ValidationError, set_stage_target
from rdtrack.schemas import (
    ImportResult,
    KeywordCount,
    RDGroupLoad,
    RDGroupOut,
    RequestCreate,
    RequestDetail,
    RequestListResponse,
    RequestOut,
    RequestUpdate,
    SimilarRequestOut,
    StageTargetIn,
    StageTargetResponse,
    TransitionStatsOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="rdtrack",
    version="0.1.0",
    description=(
        "R&D request intake and tracking API. Sales submit customer-driven change "
        "requests; R&D, executives and admins move them through stages, set stage "
        "targets and review dashboard statistics. Callers identify themselves with "
        "X-User-Id / X-User-Name / X-User-Role / X-User-Dept headers."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Requests", "description": "Create, browse, update and delete requests."},
        {"name": "Lifecycle", "description": "Stage targets and stage history."},
        {"name": "Stats", "description": "Dashboard aggregations."},
        {"name": "Import", "description": "Bulk intake from XLSX spreadsheets."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def current_actor(
    x_user_id: str | None = Header(None),
    x_user_name: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_user_dept: str | None = Header(None),
) -> Actor:
    return Actor(
        user_id=x_user_id, name=x_user_name,
        role=x_user_role.strip().upper() if x_user_role else None, dept=x_user_dept,
    )


def require_role(*roles: Role):
    allowed = {str(r) for r in roles}

    def dependency(actor: Actor = Depends(current_actor)) -> Actor:
        if actor.role not in allowed:
            raise HTTPException(403, "Forbidden")
        return actor

    return dependency


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(RequestNotFound)
async def not_found_handler(request: Request, exc: RequestNotFound):
    return JSONResponse(status_code=404, content={"detail": "Request not found"})


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Requests (static paths before /{request_id} to avoid shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/requests", response_model=RequestListResponse,
         tags=["Requests"], summary="List requests with filters, ordered by customer deadline")
async def list_requests(
    product_area: str | None = Query(None, description="Single product area"),
    product_areas: str | None = Query(None, description="Comma-separated product areas, e.g. C_ARM,MAMMO"),
    stage: str | None = Query(None, description="Single stage"),
    stages: str | None = Query(None, description="Comma-separated stages"),
    from_date: str | None = Query(None, description="Submitted on or after (ISO date)"),
    to_date: str | None = Query(None, description="Submitted on or before (ISO date)"),
    q: str | None = Query(None, description="Substring match on title, customer text and sales summary"),
    keyword: str | None = Query(None, description="Substring match on keywords"),
    rd_group_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: Session = Depends(db_session),
):
    items, total = services.query_requests(
        session, product_areas=product_areas or product_area, stages=stages or stage,
        from_date=from_date, to_date=to_date, q=q, keyword=keyword,
        rd_group_id=rd_group_id, limit=limit, offset=offset,
    )
    return {"items": items, "total": total}


@app.post("/api/requests", response_model=RequestDetail, status_code=201,
          tags=["Requests"], summary="Submit a new request")
async def create_request(
    body: RequestCreate,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role(Role.SALES, Role.EXEC, Role.ADMIN)),
    session: Session = Depends(db_session),
):
    req = services.create_request(session, body, actor)
    background_tasks.add_task(
        notifier.notify_event, notifier.EventType.REQUEST_CREATED, services.created_event_payload(req),
    )
    return services.request_detail(req)


@app.get("/api/requests/similar", response_model=list[SimilarRequestOut],
         tags=["Requests"], summary="Requests in the same product area matching a phrase, newest first")
async def similar_requests(
    product_area: str | None = Query(None), q: str | None = Query(None),
    session: Session = Depends(db_session),
):
    return services.similar_requests(session, product_area, q)


@app.get("/api/requests/high-value", response_model=list[RequestOut],
         tags=["Requests"], summary="Top 20% of requests by expected revenue")
async def high_value(session: Session = Depends(db_session)):
    return services.high_value_requests(session)


@app.get("/api/requests/stats/keywords", response_model=list[KeywordCount],
         tags=["Stats"], summary="Keyword frequency for the current year")
async def keyword_stats(session: Session = Depends(db_session)):
    return services.keyword_stats(session)


@app.get("/api/requests/stats/rd-groups", response_model=list[RDGroupLoad],
         tags=["Stats"], summary="Active requests per RD group")
async def rd_group_stats(session: Session = Depends(db_session)):
    return services.rd_group_load(session)


@app.get("/api/requests/stats/updates", response_model=TransitionStatsOut,
         tags=["Stats"], summary="Stage transitions within the last N days (1-365)")
async def transition_stats(days: str | None = Query("7"), session: Session = Depends(db_session)):
    return services.stage_transition_stats(session, days)


@app.get("/api/requests/rd-groups", response_model=list[RDGroupOut],
         tags=["Requests"], summary="List RD groups")
async def rd_groups(session: Session = Depends(db_session)):
    return services.list_rd_groups(session)


@app.get("/api/requests/{request_id}", response_model=RequestDetail,
         tags=["Requests"], summary="Request detail with history, targets and attachments")
async def get_request(request_id: str, session: Session = Depends(db_session)):
    return services.request_detail(services.get_request(session, request_id))


@app.patch("/api/requests/{request_id}", response_model=RequestDetail,
           tags=["Requests"], summary="Partial update; lists replace whole collections")
async def update_request(
    request_id: str, body: RequestUpdate,
    actor: Actor = Depends(require_role(*Role)),
    session: Session = Depends(db_session),
):
    req = services.update_request(session, request_id, body, actor)
    return services.request_detail(req)


@app.patch("/api/requests/{request_id}/stage-target", response_model=StageTargetResponse,
           tags=["Lifecycle"], summary="Set the target completion date for a stage")
async def update_stage_target(
    request_id: str, body: StageTargetIn, background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role(Role.ADMIN, Role.EXEC, Role.RD)),
    session: Session = Depends(db_session),
):
    result = set_stage_target(session, request_id, body.stage, body.target_date, actor)
    req = services.get_request(session, request_id)
    background_tasks.add_task(
        notifier.notify_event, notifier.EventType.STAGE_TARGET_UPDATED,
        services.target_event_payload(req, result, actor),
    )
    return result


@app.delete("/api/requests/{request_id}", tags=["Requests"], summary="Delete a request and all child rows")
async def delete_request(
    request_id: str,
    actor: Actor = Depends(require_role(Role.ADMIN)),
    session: Session = Depends(db_session),
):
    services.delete_request(session, request_id, actor)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Import
# ---------------------------------------------------------------------------


@app.post("/api/import", response_model=ImportResult,
          tags=["Import"], summary="Import requests from an XLSX spreadsheet")
async def import_file(
    file: UploadFile = File(...),
    actor: Actor = Depends(require_role(Role.SALES, Role.EXEC, Role.ADMIN)),
    session: Session = Depends(db_session),
):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        return import_xlsx(tmp_path, session, actor)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("rdtrack.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
