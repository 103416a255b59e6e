"""Shared business logic for the rdtrack API, MCP server and importer."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, true
from sqlalchemy.orm import Session, selectinload

from rdtrack.lifecycle import (
    ACTIVE_STAGES, Actor, RDRole, RequestNotFound, Stage, ValidationError,
    change_stage, normalize_stage, open_stage_entry, stage_target_history_out, stage_target_out,
)
from rdtrack.models import (
    RDGroup, Request, RequestAttachment, RequestKeyword, RequestRDGroup, RequestTechArea,
    StageHistory, StageTarget, StageTargetHistory,
)
from rdtrack.schemas import RequestCreate, RequestUpdate
from rdtrack.scoring import InfluenceFactors, influence_detail, influence_score, rice_score
from rdtrack.utils import isoformat, parse_datetime, split_csv, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

UPDATABLE_FIELDS = (
    "title", "customer_name", "product_area", "product_model", "category",
    "expected_revenue", "importance_flag", "current_status", "region",
    "raw_customer_text", "sales_summary", "revenue_estimate_status",
    "revenue_estimate_note", "created_by_dept", "rice_reach", "rice_impact",
    "rice_confidence", "rice_effort", "regulatory_required",
    "regulatory_risk_level", "regulatory_notes",
)

RICE_FIELDS = ("rice_reach", "rice_impact", "rice_confidence", "rice_effort")

# Sent as "" or null, these are cleared instead of left unchanged.
CLEARABLE_FIELDS = ("expected_revenue",)

SUMMARY_FIELDS = (
    "id", "title", "customer_name", "product_area", "product_model", "category",
    "region", "expected_revenue", "revenue_estimate_status", "revenue_estimate_note",
    "importance_flag", "rice_reach", "rice_impact", "rice_confidence", "rice_effort",
    "rice_score", "influence_detail", "regulatory_required", "regulatory_risk_level",
    "regulatory_notes", "strategic_alignment", "resource_estimate_weeks",
    "kpi_metric", "kpi_target", "current_stage", "current_status",
    "created_by_dept", "created_by_user_id", "created_by_name",
    "raw_customer_text", "sales_summary",
)

NOTE_CODE = "NOTE"

HIGH_VALUE_SHARE = 0.2

TRANSITION_BUCKETS = (
    ("IDEATION_TO_REVIEW", "Ideation → Review", Stage.IDEATION, Stage.REVIEW),
    ("REVIEW_TO_CONFIRM", "Review → Confirm", Stage.REVIEW, Stage.CONFIRM),
    ("CONFIRM_TO_PROJECT", "Confirm → Project", Stage.CONFIRM, Stage.PROJECT),
    ("PROJECT_TO_RELEASE", "Project → Release", Stage.PROJECT, Stage.RELEASE),
    ("ANY_TO_REJECTED", "Rejected (any stage)", None, Stage.REJECTED),
)

_LIST_LOAD = (
    selectinload(Request.keywords),
    selectinload(Request.tech_areas),
    selectinload(Request.rd_groups).selectinload(RequestRDGroup.rd_group),
    selectinload(Request.stage_history),
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def technical_notes(req: Request) -> str | None:
    return next((t.label for t in req.tech_areas if t.code == NOTE_CODE), None)


def stage_history_out(h: StageHistory) -> dict:
    return {"id": h.id, "stage": h.stage, "entered_at": isoformat(h.entered_at),
            "exited_at": isoformat(h.exited_at)}


def rd_group_out(g: RDGroup) -> dict:
    return {"id": g.id, "name": g.name, "category": g.category}


def request_summary(req: Request) -> dict:
    base = {f: getattr(req, f) for f in SUMMARY_FIELDS}
    base.update({
        "submitted_at": isoformat(req.submitted_at),
        "customer_deadline": isoformat(req.customer_deadline),
        "customer_influence_score": req.influence_score,
        "technical_notes": technical_notes(req),
        "keywords": [{"id": k.id, "keyword": k.keyword} for k in req.keywords],
        "tech_areas": [
            {"id": t.id, "group_name": t.group_name, "code": t.code, "label": t.label}
            for t in req.tech_areas
        ],
        "rd_groups": [
            {"rd_group_id": link.rd_group_id, "role": link.role, "rd_group": rd_group_out(link.rd_group)}
            for link in req.rd_groups
        ],
        "stage_history": [stage_history_out(h) for h in req.stage_history],
    })
    return base


def request_detail(req: Request) -> dict:
    base = request_summary(req)
    base["attachments"] = [{"id": a.id, "filename": a.filename, "url": a.url} for a in req.attachments]
    base["stage_targets"] = [stage_target_out(t) for t in req.stage_targets]
    base["stage_target_history"] = [stage_target_history_out(h) for h in req.stage_target_history]
    return base


def created_event_payload(req: Request) -> dict:
    return {
        "id": req.id, "title": req.title, "created_by_name": req.created_by_name,
        "created_by_user_id": req.created_by_user_id, "product_area": req.product_area,
        "importance_flag": req.importance_flag,
        "customer_deadline": isoformat(req.customer_deadline),
    }


def target_event_payload(req: Request, result: dict, actor: Actor) -> dict:
    target = result["target"]
    return {
        "id": req.id, "title": req.title, "stage": target["stage"],
        "target_date": target["target_date"], "previous_target": result.get("previous_target"),
        "changed_by_name": actor.name, "changed_by_user_id": actor.user_id,
    }


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def get_request(session: Session, request_id: str) -> Request:
    req = get_entity(session, Request, request_id)
    if req is None:
        raise RequestNotFound(request_id)
    return req


def list_rd_groups(session: Session) -> list[dict]:
    groups = session.execute(select(RDGroup).order_by(RDGroup.name)).scalars().all()
    return [rd_group_out(g) for g in groups]


def _check_rd_groups(session: Session, rd_group_ids: list[str]) -> None:
    if not rd_group_ids:
        return
    found = set(session.execute(select(RDGroup.id).where(RDGroup.id.in_(rd_group_ids))).scalars().all())
    # duplicates count as an invalid selection
    if len(found) != len(rd_group_ids):
        raise ValidationError("Invalid RD group selection")


def _tech_area_rows(tech_areas: list[dict], notes: str | None) -> list[RequestTechArea]:
    rows = [
        RequestTechArea(
            group_name=t.get("group_name") or "Notes",
            code=t.get("code") or NOTE_CODE,
            label=t.get("label") or "",
        )
        for t in tech_areas
    ]
    note = (notes or "").strip()
    if note:
        rows.append(RequestTechArea(group_name="Notes", code=NOTE_CODE, label=note))
    return rows


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def create_request(
    session: Session, body: RequestCreate, actor: Actor, now: datetime | None = None,
) -> Request:
    """Create a request with its child rows and first stage interval, then commit."""
    _check_rd_groups(session, body.rd_group_ids)
    now = now or utcnow()

    factors = InfluenceFactors(
        revenue=body.influence_revenue, kol=body.influence_kol, reuse=body.influence_reuse,
        strategic=body.influence_strategic, tender=body.influence_tender,
    )
    inf_score = influence_score(factors)

    req = Request(
        title=body.title,
        customer_name=body.customer_name,
        product_area=_plain(body.product_area),
        product_model=body.product_model,
        category=_plain(body.category),
        region=body.region,
        expected_revenue=body.expected_revenue,
        revenue_estimate_status=_plain(body.revenue_estimate_status),
        revenue_estimate_note=body.revenue_estimate_note,
        importance_flag=_plain(body.importance_flag),
        customer_deadline=parse_datetime(body.customer_deadline) or now,
        submitted_at=now,
        current_stage=str(Stage.IDEATION),
        current_status=body.current_status or "SUBMITTED",
        created_by_dept=actor.dept or body.created_by_dept or "unknown-dept",
        created_by_user_id=actor.user_id or body.created_by_user_id or "unknown-user",
        created_by_name=actor.name or body.created_by_name,
        raw_customer_text=body.raw_customer_text,
        sales_summary=body.sales_summary,
        rice_reach=body.rice_reach,
        rice_impact=body.rice_impact,
        rice_confidence=body.rice_confidence,
        rice_effort=body.rice_effort,
        rice_score=rice_score(body.rice_reach, body.rice_impact, body.rice_confidence, body.rice_effort),
        influence_score=inf_score if inf_score > 0 else None,
        influence_detail=influence_detail(factors) if inf_score > 0 else None,
        regulatory_required=body.regulatory_required,
        regulatory_risk_level=_plain(body.regulatory_risk_level),
        regulatory_notes=body.regulatory_notes,
        strategic_alignment=body.strategic_alignment,
        resource_estimate_weeks=body.resource_estimate_weeks,
        kpi_metric=body.kpi_metric,
        kpi_target=body.kpi_target,
        keywords=[RequestKeyword(keyword=k) for k in body.keywords if k],
        tech_areas=_tech_area_rows([t.model_dump() for t in body.tech_areas], body.technical_notes),
        attachments=[RequestAttachment(filename=a.filename, url=a.url) for a in body.attachments],
        rd_groups=[RequestRDGroup(rd_group_id=g, role=str(RDRole.LEAD)) for g in body.rd_group_ids],
    )
    session.add(req)
    open_stage_entry(session, req, now)
    try:
        session.commit()
    except Exception:
        session.rollback()
        raise
    log.info("Request %s created by %s (%s)", req.id, req.created_by_user_id, req.product_area)
    return req


def update_request(
    session: Session, request_id: str, body: RequestUpdate,
    actor: Actor | None = None, now: datetime | None = None,
) -> Request:
    """Apply a partial update in one transaction.

    Scalar fields are applied when non-null. Child collections present in the
    body are replaced wholesale. A stage change appends stage history. RICE
    score is recomputed whenever any factor is part of the update.
    """
    req = get_request(session, request_id)
    updates = body.model_dump(include=body.model_fields_set)
    if updates.get("rd_group_ids") is not None:
        _check_rd_groups(session, updates["rd_group_ids"])

    try:
        for field in UPDATABLE_FIELDS:
            val = updates.get(field)
            if val is not None or (field in CLEARABLE_FIELDS and field in updates):
                setattr(req, field, _plain(val))
        if updates.get("customer_deadline") is not None:
            req.customer_deadline = parse_datetime(updates["customer_deadline"])
        if isinstance(updates.get("created_by_name"), str):
            name = updates["created_by_name"].strip()
            req.created_by_name = name or req.created_by_name
        if any(updates.get(f) is not None for f in RICE_FIELDS):
            req.rice_score = rice_score(*(getattr(req, f) for f in RICE_FIELDS))

        new_stage = normalize_stage(_plain(updates.get("current_stage")))
        if new_stage and new_stage != normalize_stage(req.current_stage):
            change_stage(session, req, new_stage, now)

        if updates.get("keywords") is not None:
            session.execute(delete(RequestKeyword).where(RequestKeyword.request_id == req.id))
            session.add_all(RequestKeyword(request_id=req.id, keyword=k) for k in updates["keywords"] if k)
        if updates.get("attachments") is not None:
            session.execute(delete(RequestAttachment).where(RequestAttachment.request_id == req.id))
            session.add_all(
                RequestAttachment(request_id=req.id, filename=a["filename"], url=a.get("url"))
                for a in updates["attachments"]
            )
        if updates.get("tech_areas") is not None or "technical_notes" in updates:
            session.execute(delete(RequestTechArea).where(RequestTechArea.request_id == req.id))
            for row in _tech_area_rows(updates.get("tech_areas") or [], updates.get("technical_notes")):
                row.request_id = req.id
                session.add(row)
        if updates.get("rd_group_ids") is not None:
            session.execute(delete(RequestRDGroup).where(RequestRDGroup.request_id == req.id))
            session.add_all(
                RequestRDGroup(request_id=req.id, rd_group_id=g, role=str(RDRole.LEAD)) for g in updates["rd_group_ids"]
            )
        session.commit()
    except Exception:
        session.rollback()
        raise
    # Collections were replaced with bulk statements; reload on next access.
    session.expire(req)
    log.info("Request %s updated by %s", request_id, (actor.user_id if actor else None) or "unknown")
    return req


def delete_request(session: Session, request_id: str, actor: Actor | None = None) -> None:
    """Delete a request after explicitly deleting all of its child rows."""
    get_request(session, request_id)
    try:
        for model in (RequestKeyword, RequestRDGroup, RequestAttachment, RequestTechArea,
                      StageHistory, StageTarget, StageTargetHistory):
            session.execute(delete(model).where(model.request_id == request_id))
        session.execute(delete(Request).where(Request.id == request_id))
        session.commit()
    except Exception:
        session.rollback()
        raise
    log.info("Request %s deleted by %s", request_id, (actor.user_id if actor else None) or "unknown")


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------


def build_request_filter(
    *, product_areas=None, stages=None, from_date=None, to_date=None,
    q: str | None = None, keyword: str | None = None, rd_group_id: str | None = None,
):
    """Compose all supplied filters with AND; multi-valued filters OR their entries."""
    clauses = []
    areas = split_csv(product_areas)
    if areas:
        clauses.append(Request.product_area.in_(areas))
    stage_list = [normalize_stage(s) for s in split_csv(stages)]
    if stage_list:
        clauses.append(Request.current_stage.in_(stage_list))
    start = parse_datetime(from_date)
    end = parse_datetime(to_date)
    if (from_date and start is None) or (to_date and end is None):
        raise ValidationError("Invalid date range")
    if start is not None:
        clauses.append(Request.submitted_at >= start)
    if end is not None:
        clauses.append(Request.submitted_at <= end)
    if q:
        clauses.append(or_(
            Request.title.contains(q, autoescape=True),
            Request.raw_customer_text.contains(q, autoescape=True),
            Request.sales_summary.contains(q, autoescape=True),
        ))
    if keyword:
        clauses.append(Request.keywords.any(RequestKeyword.keyword.contains(keyword, autoescape=True)))
    if rd_group_id:
        clauses.append(Request.rd_groups.any(RequestRDGroup.rd_group_id == rd_group_id))
    return and_(true(), *clauses)


def query_requests(
    session: Session, *, product_areas=None, stages=None, from_date=None, to_date=None,
    q=None, keyword=None, rd_group_id=None, limit: int = 50, offset: int = 0,
) -> tuple[list[dict], int]:
    where = build_request_filter(
        product_areas=product_areas, stages=stages, from_date=from_date, to_date=to_date,
        q=q, keyword=keyword, rd_group_id=rd_group_id,
    )
    total = session.execute(select(func.count(Request.id)).where(where)).scalar_one()
    rows = session.execute(
        select(Request).where(where).options(*_LIST_LOAD)
        .order_by(Request.customer_deadline.asc(), Request.id)
        .offset(offset).limit(limit)
    ).scalars().all()
    return [request_summary(r) for r in rows], total


def similar_requests(session: Session, product_area: str | None, q: str | None, limit: int = 10) -> list[dict]:
    if not product_area or not q:
        raise ValidationError("productArea and q required")
    rows = session.execute(
        select(Request)
        .where(Request.product_area == product_area,
               or_(Request.title.contains(q, autoescape=True),
                   Request.raw_customer_text.contains(q, autoescape=True)))
        .order_by(Request.submitted_at.desc())
        .limit(limit)
    ).scalars().all()
    return [
        {"id": r.id, "title": r.title, "product_area": r.product_area,
         "submitted_at": isoformat(r.submitted_at), "current_stage": r.current_stage}
        for r in rows
    ]


def high_value_requests(session: Session) -> list[dict]:
    """Top 20% of requests by expected revenue (at least one), soonest deadline first."""
    ranked = session.execute(
        select(Request).where(Request.expected_revenue.is_not(None))
        .options(*_LIST_LOAD)
        .order_by(Request.expected_revenue.desc())
    ).scalars().all()
    if not ranked:
        return []
    top = ranked[:max(1, math.floor(len(ranked) * HIGH_VALUE_SHARE))]
    top.sort(key=lambda r: r.customer_deadline)
    return [request_summary(r) for r in top]


# ---------------------------------------------------------------------------
# Dashboard stats
# ---------------------------------------------------------------------------


def clamp_window(days: Any, default: int = 7) -> int:
    try:
        value = float(days)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value) or value <= 0:
        return default
    return int(min(365, max(1, value)))


def _keep_latest(items: list[dict]) -> list[dict]:
    latest: dict[str, dict] = {}
    for item in items:
        existing = latest.get(item["request_id"])
        if existing is None or item["_at"] > existing["_at"]:
            latest[item["request_id"]] = item
    ordered = sorted(latest.values(), key=lambda i: i["_at"], reverse=True)
    return [{k: v for k, v in i.items() if k != "_at"} for i in ordered]


def stage_transition_stats(session: Session, days: Any = 7, now: datetime | None = None) -> dict:
    """Bucket stage transitions entered within the last *days* days.

    Each touched request's full history is replayed so the from-stage of the
    first in-window entry is known. Only the latest transition per request
    is kept in each bucket.
    """
    window = clamp_window(days)
    start = (now or utcnow()) - timedelta(days=window)
    buckets: dict[str, list[dict]] = {key: [] for key, *_ in TRANSITION_BUCKETS}

    request_ids = session.execute(
        select(StageHistory.request_id).where(StageHistory.entered_at >= start).distinct()
    ).scalars().all()
    if request_ids:
        requests = {
            r.id: r for r in session.execute(select(Request).where(Request.id.in_(request_ids))).scalars()
        }
        histories = session.execute(
            select(StageHistory).where(StageHistory.request_id.in_(request_ids))
            .order_by(StageHistory.request_id, StageHistory.entered_at, StageHistory.id)
        ).scalars().all()

        prev_stage: str | None = None
        current_id: str | None = None
        for h in histories:
            if h.request_id != current_id:
                current_id, prev_stage = h.request_id, None
            to_stage = normalize_stage(h.stage)
            if h.entered_at < start:
                prev_stage = to_stage
                continue
            req = requests.get(h.request_id)
            record = {
                "request_id": h.request_id,
                "title": req.title if req else "",
                "customer_name": req.customer_name if req else "",
                "product_area": req.product_area if req else "",
                "current_stage": req.current_stage if req else to_stage,
                "from_stage": prev_stage,
                "to_stage": to_stage,
                "entered_at": isoformat(h.entered_at),
                "_at": h.entered_at,
            }
            for key, _, src, dst in TRANSITION_BUCKETS:
                if to_stage == dst and (src is None or prev_stage == src):
                    buckets[key].append(record)
            prev_stage = to_stage

    return {
        "window_days": window,
        "transitions": [
            {"key": key, "label": label, "items": _keep_latest(buckets[key])}
            for key, label, *_ in TRANSITION_BUCKETS
        ],
    }


def keyword_stats(session: Session, since: datetime | None = None) -> list[dict]:
    """Keyword frequency over requests submitted since *since* (default: start of this year)."""
    if since is None:
        since = utcnow().replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    count = func.count(RequestKeyword.id).label("count")
    rows = session.execute(
        select(RequestKeyword.keyword, count)
        .join(Request, Request.id == RequestKeyword.request_id)
        .where(Request.submitted_at >= since)
        .group_by(RequestKeyword.keyword)
        .order_by(count.desc(), RequestKeyword.keyword)
    ).all()
    return [{"keyword": kw, "count": n} for kw, n in rows]


def rd_group_load(session: Session) -> list[dict]:
    """Requests in active stages per RD group."""
    counts = dict(session.execute(
        select(RequestRDGroup.rd_group_id, func.count(RequestRDGroup.id))
        .join(Request, Request.id == RequestRDGroup.request_id)
        .where(Request.current_stage.in_([str(s) for s in ACTIVE_STAGES]))
        .group_by(RequestRDGroup.rd_group_id)
    ).all())
    groups = session.execute(select(RDGroup).order_by(RDGroup.name)).scalars().all()
    return [
        {"id": g.id, "group": g.name, "category": g.category, "active_requests": counts.get(g.id, 0)}
        for g in groups
    ]
