from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from rdtrack.utils import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class Request(Base):
    __tablename__ = "requests"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    product_area: Mapped[str] = mapped_column(String(30), nullable=False)  # ProductArea
    product_model: Mapped[str | None] = mapped_column(String(100), nullable=True)
    category: Mapped[str] = mapped_column(String(30), default="CUSTOMIZATION")
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)

    expected_revenue: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    revenue_estimate_status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # NUMERIC | UNKNOWN
    revenue_estimate_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    importance_flag: Mapped[str] = mapped_column(String(10), default="MUST")  # MUST > SHOULD > NICE
    rice_reach: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rice_impact: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rice_confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rice_effort: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rice_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    influence_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    influence_detail: Mapped[str | None] = mapped_column(String(100), nullable=True)
    strategic_alignment: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resource_estimate_weeks: Mapped[int | None] = mapped_column(Integer, nullable=True)
    kpi_metric: Mapped[str | None] = mapped_column(String(200), nullable=True)
    kpi_target: Mapped[int | None] = mapped_column(Integer, nullable=True)

    regulatory_required: Mapped[bool] = mapped_column(Boolean, default=False)
    regulatory_risk_level: Mapped[str | None] = mapped_column(String(10), nullable=True)  # LOW | MEDIUM | HIGH
    regulatory_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    current_stage: Mapped[str] = mapped_column(String(20), default="IDEATION")
    current_status: Mapped[str] = mapped_column(String(50), default="SUBMITTED")

    created_by_dept: Mapped[str] = mapped_column(String(100), default="unknown-dept")
    created_by_user_id: Mapped[str] = mapped_column(String(100), default="unknown-user")
    created_by_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    customer_deadline: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    raw_customer_text: Mapped[str] = mapped_column(Text, nullable=False)
    sales_summary: Mapped[str] = mapped_column(Text, nullable=False)

    # Child rows are removed with explicit deletes in services.delete_request.
    keywords: Mapped[list[RequestKeyword]] = relationship("RequestKeyword", back_populates="request")
    tech_areas: Mapped[list[RequestTechArea]] = relationship("RequestTechArea", back_populates="request")
    attachments: Mapped[list[RequestAttachment]] = relationship("RequestAttachment", back_populates="request")
    rd_groups: Mapped[list[RequestRDGroup]] = relationship("RequestRDGroup", back_populates="request")
    stage_history: Mapped[list[StageHistory]] = relationship(
        "StageHistory", back_populates="request", order_by=lambda: (StageHistory.entered_at, StageHistory.id),
    )
    stage_targets: Mapped[list[StageTarget]] = relationship("StageTarget", back_populates="request")
    stage_target_history: Mapped[list[StageTargetHistory]] = relationship(
        "StageTargetHistory", back_populates="request", order_by="StageTargetHistory.changed_at.desc()",
    )


class StageHistory(Base):
    __tablename__ = "stage_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    exited_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    request: Mapped[Request] = relationship("Request", back_populates="stage_history")


class StageTarget(Base):
    __tablename__ = "stage_targets"
    __table_args__ = (UniqueConstraint("request_id", "stage", name="uq_stage_target_request_stage"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    target_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    set_by_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    set_by_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    request: Mapped[Request] = relationship("Request", back_populates="stage_targets")


class StageTargetHistory(Base):
    __tablename__ = "stage_target_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_target: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    new_target: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    changed_by_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    changed_by_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    request: Mapped[Request] = relationship("Request", back_populates="stage_target_history")


class RequestKeyword(Base):
    __tablename__ = "request_keywords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False, index=True)
    keyword: Mapped[str] = mapped_column(String(100), nullable=False)

    request: Mapped[Request] = relationship("Request", back_populates="keywords")


class RequestTechArea(Base):
    __tablename__ = "request_tech_areas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False, index=True)
    group_name: Mapped[str] = mapped_column(String(100), default="Notes")
    code: Mapped[str] = mapped_column(String(50), default="NOTE")  # "NOTE" carries technical notes
    label: Mapped[str] = mapped_column(Text, default="")

    request: Mapped[Request] = relationship("Request", back_populates="tech_areas")


class RequestAttachment(Base):
    __tablename__ = "request_attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False, index=True)
    filename: Mapped[str] = mapped_column(String(300), nullable=False)
    url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    request: Mapped[Request] = relationship("Request", back_populates="attachments")


class RDGroup(Base):
    __tablename__ = "rd_groups"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    category: Mapped[str] = mapped_column(String(50), default="")

    links: Mapped[list[RequestRDGroup]] = relationship("RequestRDGroup", back_populates="rd_group")


class RequestRDGroup(Base):
    __tablename__ = "request_rd_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(32), ForeignKey("requests.id"), nullable=False, index=True)
    rd_group_id: Mapped[str] = mapped_column(String(32), ForeignKey("rd_groups.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(10), default="LEAD")  # LEAD | SUPPORT

    request: Mapped[Request] = relationship("Request", back_populates="rd_groups")
    rd_group: Mapped[RDGroup] = relationship("RDGroup", back_populates="links")
