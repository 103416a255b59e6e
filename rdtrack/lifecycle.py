"""Request lifecycle: stage vocabulary, stage history and stage targets.

Stages
------
A request moves through ``IDEATION → REVIEW → CONFIRM → PROJECT → RELEASE``
and may be moved to ``REJECTED`` from any stage.  Older data recorded the
terminal stage as ``COMPLETE``; every stage name passes through
:func:`normalize_stage` before it is compared or stored, so ``COMPLETE`` and
``RELEASE`` are never counted as distinct stages.

Stage history
-------------
``stage_history`` is append-only.  Each row is an interval; the row with
``exited_at IS NULL`` is the open interval and its stage equals
``Request.current_stage``.  :func:`change_stage` closes the open row and
opens a new one with the same timestamp.

Stage targets
-------------
One ``StageTarget`` per ``(request_id, stage)`` holds the planned completion
date.  Every write appends a ``StageTargetHistory`` row carrying the previous
and new date, including the first write (previous is ``None``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from rdtrack.models import Request, StageHistory, StageTarget, StageTargetHistory
from rdtrack.utils import isoformat, parse_datetime, utcnow

log = logging.getLogger(__name__)


class LifecycleError(Exception):
    """Base class for request lifecycle failures surfaced to callers."""


class ValidationError(LifecycleError, ValueError):
    """Input is missing or malformed. Raised before any write."""


class RequestNotFound(LifecycleError, LookupError):
    """No request exists with the given id."""
    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} not found")
        self.request_id = request_id


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------


class Stage(StrEnum):
    IDEATION = "IDEATION"
    REVIEW = "REVIEW"
    CONFIRM = "CONFIRM"
    PROJECT = "PROJECT"
    RELEASE = "RELEASE"
    REJECTED = "REJECTED"


class ProductArea(StrEnum):
    C_ARM = "C_ARM"
    MAMMO = "MAMMO"
    DENTAL = "DENTAL"
    C_ARM_NEW = "C_ARM_NEW"
    MAMMO_NEW = "MAMMO_NEW"
    DENTAL_NEW = "DENTAL_NEW"
    NEW_BUSINESS = "NEW_BUSINESS"


class Category(StrEnum):
    NEW_PRODUCT = "NEW_PRODUCT"
    PRODUCT_IMPROVEMENT = "PRODUCT_IMPROVEMENT"
    CUSTOMIZATION = "CUSTOMIZATION"


class Importance(StrEnum):
    MUST = "MUST"
    SHOULD = "SHOULD"
    NICE = "NICE"


class RevenueEstimateStatus(StrEnum):
    NUMERIC = "NUMERIC"
    UNKNOWN = "UNKNOWN"


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Role(StrEnum):
    SALES = "SALES"
    RD = "RD"
    EXEC = "EXEC"
    ADMIN = "ADMIN"
    VIEWER = "VIEWER"


class RDRole(StrEnum):
    LEAD = "LEAD"
    SUPPORT = "SUPPORT"


ACTIVE_STAGES = (Stage.IDEATION, Stage.REVIEW, Stage.CONFIRM, Stage.PROJECT)

_STAGE_ALIASES = {"COMPLETE": Stage.RELEASE}


def normalize_stage(value: str | Stage | None) -> str | None:
    """Map historical aliases onto canonical stage names (``COMPLETE`` → ``RELEASE``).

    Unknown names are returned upper-cased and unchanged so callers can
    decide whether to reject them; use :func:`parse_stage` for strict parsing.
    """
    if value is None:
        return None
    name = str(value).strip().upper()
    return str(_STAGE_ALIASES.get(name, name))


def parse_stage(value: str | Stage | None) -> Stage:
    """Normalize and validate a stage name. Raises ValidationError if unknown."""
    name = normalize_stage(value)
    if not name:
        raise ValidationError("stage is required")
    try:
        return Stage(name)
    except ValueError:
        raise ValidationError(f"Unknown stage: {value!r}") from None


@dataclass(frozen=True)
class Actor:
    """Authenticated caller attributed on stage and target changes."""
    user_id: str | None = None
    name: str | None = None
    role: str | None = None
    dept: str | None = None


# ---------------------------------------------------------------------------
# Stage tracker
# ---------------------------------------------------------------------------


def open_stage_entry(session: Session, request: Request, now: datetime | None = None) -> StageHistory:
    """Open the first history interval for a freshly created request (caller must commit)."""
    entry = StageHistory(stage=request.current_stage, entered_at=now or utcnow(), exited_at=None)
    request.stage_history.append(entry)
    session.add(entry)
    return entry


def change_stage(
    session: Session, request: Request, new_stage: str | Stage, now: datetime | None = None,
) -> StageHistory:
    """Move *request* to *new_stage*, closing the open interval (caller must commit).

    The caller is responsible for skipping calls where the stage does not
    change; repeated calls each append a row.
    """
    stage = parse_stage(new_stage)
    now = now or utcnow()
    previous = request.current_stage
    request.current_stage = str(stage)
    session.flush()
    closed = session.execute(
        update(StageHistory)
        .where(StageHistory.request_id == request.id, StageHistory.exited_at.is_(None))
        .values(exited_at=now)
        .execution_options(synchronize_session="fetch")
    ).rowcount
    if not closed:
        log.warning("No open stage interval for request %s; opening %s anyway", request.id, stage)
    entry = StageHistory(request_id=request.id, stage=str(stage), entered_at=now, exited_at=None)
    session.add(entry)
    log.info("Request %s stage %s -> %s", request.id, previous, stage)
    return entry


# ---------------------------------------------------------------------------
# Stage target tracker
# ---------------------------------------------------------------------------


def stage_target_out(target: StageTarget) -> dict[str, Any]:
    return {
        "id": target.id, "request_id": target.request_id, "stage": target.stage,
        "target_date": isoformat(target.target_date),
        "set_by_user_id": target.set_by_user_id, "set_by_name": target.set_by_name,
        "updated_at": isoformat(target.updated_at),
    }


def stage_target_history_out(row: StageTargetHistory) -> dict[str, Any]:
    return {
        "id": row.id, "request_id": row.request_id, "stage": row.stage,
        "previous_target": isoformat(row.previous_target),
        "new_target": isoformat(row.new_target),
        "changed_by_user_id": row.changed_by_user_id,
        "changed_by_name": row.changed_by_name,
        "changed_at": isoformat(row.changed_at),
    }


def set_stage_target(
    session: Session, request_id: str, stage: str | None, target_date: Any,
    actor: Actor, now: datetime | None = None,
) -> dict[str, Any]:
    """Upsert the target date for one stage and append an audit row.

    Commits on success and rolls back on failure.  Returns the current
    target, all targets of the request, and the target history newest-first.
    """
    if not stage or target_date is None or target_date == "":
        raise ValidationError("stage and targetDate required")
    parsed = parse_datetime(target_date)
    if parsed is None:
        raise ValidationError("Invalid targetDate")
    normalized = str(parse_stage(stage))

    request = session.get(Request, request_id)
    if request is None:
        raise RequestNotFound(request_id)

    now = now or utcnow()
    existing = session.execute(
        select(StageTarget).where(StageTarget.request_id == request_id, StageTarget.stage == normalized)
    ).scalars().first()
    previous = existing.target_date if existing else None

    try:
        if existing is None:
            existing = StageTarget(request_id=request_id, stage=normalized)
            session.add(existing)
        existing.target_date = parsed
        existing.set_by_user_id = actor.user_id
        existing.set_by_name = actor.name
        existing.updated_at = now
        session.add(StageTargetHistory(
            request_id=request_id, stage=normalized,
            previous_target=previous, new_target=parsed,
            changed_by_user_id=actor.user_id, changed_by_name=actor.name,
            changed_at=now,
        ))
        session.commit()
    except Exception:
        session.rollback()
        raise
    log.info("Request %s target for %s set to %s by %s", request_id, normalized,
             parsed.date().isoformat(), actor.name or actor.user_id or "unknown")

    targets = session.execute(
        select(StageTarget).where(StageTarget.request_id == request_id).order_by(StageTarget.stage)
    ).scalars().all()
    history = session.execute(
        select(StageTargetHistory)
        .where(StageTargetHistory.request_id == request_id)
        .order_by(StageTargetHistory.changed_at.desc(), StageTargetHistory.id.desc())
    ).scalars().all()
    return {
        "target": stage_target_out(existing),
        "targets": [stage_target_out(t) for t in targets],
        "history": [stage_target_history_out(h) for h in history],
        "previous_target": isoformat(previous),
    }
