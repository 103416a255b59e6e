"""Tests for request services: mutations, filters and dashboard stats."""
from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from rdtrack import services
from rdtrack.db import DEFAULT_RD_GROUPS, seed_rd_groups
from rdtrack.lifecycle import Actor, RequestNotFound, ValidationError, change_stage, set_stage_target
from rdtrack.models import (
    Base, RDGroup, Request, RequestKeyword, RequestRDGroup, RequestTechArea, StageHistory,
    StageTarget, StageTargetHistory,
)
from rdtrack.schemas import RequestCreate, RequestUpdate

NOW = datetime(2026, 6, 15, 12, 0, 0)
SALES = Actor(user_id="u-sales-1", name="Lee Sales", role="SALES", dept="Sales Korea")


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    seed_rd_groups(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def groups(session: Session) -> dict[str, str]:
    return {g.name: g.id for g in session.execute(select(RDGroup)).scalars()}


def _body(**overrides) -> RequestCreate:
    data = {
        "title": "Stitching for long legs",
        "customer_name": "City Clinic",
        "product_area": "C_ARM",
        "raw_customer_text": "Customer wants automatic image stitching.",
        "sales_summary": "Auto stitching",
    }
    data.update(overrides)
    return RequestCreate(**data)


def _create(session: Session, now: datetime = NOW, **overrides) -> Request:
    return services.create_request(session, _body(**overrides), SALES, now=now)


class TestCreateRequest:
    def test_defaults_and_first_stage(self, session):
        req = _create(session)
        assert req.current_stage == "IDEATION"
        assert req.current_status == "SUBMITTED"
        assert req.category == "CUSTOMIZATION"
        assert req.importance_flag == "MUST"
        assert req.customer_deadline == NOW
        assert req.submitted_at == NOW

        rows = session.execute(select(StageHistory).where(StageHistory.request_id == req.id)).scalars().all()
        assert len(rows) == 1
        assert rows[0].stage == "IDEATION"
        assert rows[0].exited_at is None

    def test_actor_attribution_wins(self, session):
        req = _create(session, created_by_user_id="spoofed", created_by_name="Someone")
        assert req.created_by_user_id == "u-sales-1"
        assert req.created_by_name == "Lee Sales"
        assert req.created_by_dept == "Sales Korea"

    def test_anonymous_defaults(self, session):
        req = services.create_request(session, _body(), Actor(), now=NOW)
        assert req.created_by_user_id == "unknown-user"
        assert req.created_by_dept == "unknown-dept"

    def test_children_and_scores(self, session, groups):
        req = _create(
            session,
            keywords=["stitching", "ortho"],
            tech_areas=[{"group_name": "Imaging", "code": "IMG_STITCH", "label": "Stitching"}],
            attachments=[{"filename": "spec.pdf", "url": "https://files.example/spec.pdf"}],
            rd_group_ids=[groups["Imaging / Algorithms"]],
            technical_notes="Needs detector sync",
            rice_reach=5, rice_impact=6, rice_confidence=7, rice_effort=3,
            influence_revenue=2, influence_kol=1, influence_reuse=0, influence_strategic=2, influence_tender=1,
        )
        detail = services.request_detail(req)
        assert [k["keyword"] for k in detail["keywords"]] == ["stitching", "ortho"]
        assert detail["technical_notes"] == "Needs detector sync"
        assert {t["code"] for t in detail["tech_areas"]} == {"IMG_STITCH", "NOTE"}
        assert detail["attachments"][0]["filename"] == "spec.pdf"
        assert detail["rd_groups"][0]["role"] == "LEAD"
        assert detail["rd_groups"][0]["rd_group"]["name"] == "Imaging / Algorithms"
        assert detail["rice_score"] == pytest.approx(70.0)
        assert detail["customer_influence_score"] == 6
        assert detail["influence_detail"] == "①2 ②1 ③0 ④2 ⑤1"

    def test_zero_influence_is_not_stored(self, session):
        req = _create(session, influence_revenue=0, influence_kol=0)
        assert req.influence_score is None
        assert req.influence_detail is None

    def test_partial_rice_is_none(self, session):
        req = _create(session, rice_reach=5, rice_impact=6)
        assert req.rice_score is None

    def test_invalid_rd_group(self, session):
        with pytest.raises(ValidationError, match="Invalid RD group selection"):
            _create(session, rd_group_ids=["nope"])
        assert session.execute(select(Request)).scalars().all() == []

    def test_duplicate_rd_group(self, session, groups):
        ui = groups["UI/UX"]
        with pytest.raises(ValidationError, match="Invalid RD group selection"):
            _create(session, rd_group_ids=[ui, ui])
        assert session.execute(select(RequestRDGroup)).scalars().all() == []


class TestUpdateRequest:
    def test_scalar_fields(self, session):
        req = _create(session)
        services.update_request(session, req.id, RequestUpdate(title="New title", region="EU"), now=NOW)
        fresh = services.get_request(session, req.id)
        assert fresh.title == "New title"
        assert fresh.region == "EU"
        assert fresh.customer_name == "City Clinic"

    def test_none_leaves_field_unchanged(self, session):
        req = _create(session, region="APAC")
        services.update_request(session, req.id, RequestUpdate(region=None, title="X"))
        assert services.get_request(session, req.id).region == "APAC"

    def test_stage_change_appends_history(self, session):
        req = _create(session)
        later = NOW + timedelta(days=2)
        services.update_request(session, req.id, RequestUpdate(current_stage="REVIEW"), now=later)
        fresh = services.get_request(session, req.id)
        assert fresh.current_stage == "REVIEW"
        assert [h.stage for h in fresh.stage_history] == ["IDEATION", "REVIEW"]
        assert fresh.stage_history[0].exited_at == later

    def test_same_stage_is_noop(self, session):
        req = _create(session)
        services.update_request(session, req.id, RequestUpdate(current_stage="IDEATION"))
        assert len(services.get_request(session, req.id).stage_history) == 1

    def test_complete_maps_to_release(self, session):
        req = _create(session)
        services.update_request(session, req.id, RequestUpdate(current_stage="COMPLETE"))
        assert services.get_request(session, req.id).current_stage == "RELEASE"

    def test_rice_recomputed_from_merged_factors(self, session):
        req = _create(session, rice_reach=5, rice_impact=6, rice_confidence=7, rice_effort=3)
        services.update_request(session, req.id, RequestUpdate(rice_effort=7))
        assert services.get_request(session, req.id).rice_score == pytest.approx(30.0)

    def test_collections_replaced_wholesale(self, session, groups):
        req = _create(session, keywords=["a", "b"], rd_group_ids=[groups["UI/UX"]], technical_notes="old note")
        services.update_request(session, req.id, RequestUpdate(
            keywords=["c"], rd_group_ids=[groups["AI / Deep Learning"], groups["Software Platform"]],
        ))
        fresh = services.get_request(session, req.id)
        assert [k.keyword for k in fresh.keywords] == ["c"]
        assert {link.rd_group.name for link in fresh.rd_groups} == {"AI / Deep Learning", "Software Platform"}
        # tech areas untouched when neither tech_areas nor technical_notes is sent
        assert services.technical_notes(fresh) == "old note"

    def test_empty_list_clears_collection(self, session):
        req = _create(session, keywords=["a", "b"])
        services.update_request(session, req.id, RequestUpdate(keywords=[]))
        assert services.get_request(session, req.id).keywords == []

    def test_technical_notes_replaces_tech_areas(self, session):
        req = _create(session, tech_areas=[{"code": "X", "label": "x"}], technical_notes="old")
        services.update_request(session, req.id, RequestUpdate(technical_notes="new"))
        fresh = services.get_request(session, req.id)
        assert [(t.code, t.label) for t in fresh.tech_areas] == [("NOTE", "new")]

    def test_blank_created_by_name_is_ignored(self, session):
        req = _create(session)
        services.update_request(session, req.id, RequestUpdate(created_by_name="   "))
        assert services.get_request(session, req.id).created_by_name == "Lee Sales"

    def test_invalid_rd_group_rolls_back(self, session):
        req = _create(session, keywords=["keep"])
        with pytest.raises(ValidationError):
            services.update_request(session, req.id, RequestUpdate(keywords=["drop"], rd_group_ids=["bad"]))
        assert [k.keyword for k in services.get_request(session, req.id).keywords] == ["keep"]

    def test_blank_revenue_clears_it(self, session):
        req = _create(session, expected_revenue=1000)
        services.update_request(session, req.id, RequestUpdate(expected_revenue="", revenue_estimate_status="UNKNOWN"))
        fresh = services.get_request(session, req.id)
        assert fresh.expected_revenue is None
        assert fresh.revenue_estimate_status == "UNKNOWN"
        assert services.high_value_requests(session) == []

    def test_null_revenue_clears_it(self, session):
        req = _create(session, expected_revenue=1000)
        services.update_request(session, req.id, RequestUpdate.model_validate({"expected_revenue": None}))
        assert services.get_request(session, req.id).expected_revenue is None

    def test_omitted_revenue_is_kept(self, session):
        req = _create(session, expected_revenue=1000)
        services.update_request(session, req.id, RequestUpdate(title="Renamed"))
        assert services.get_request(session, req.id).expected_revenue == 1000

    def test_duplicate_rd_group(self, session, groups):
        req = _create(session)
        ui = groups["UI/UX"]
        with pytest.raises(ValidationError):
            services.update_request(session, req.id, RequestUpdate(rd_group_ids=[ui, ui]))
        assert services.get_request(session, req.id).rd_groups == []

    def test_failed_commit_leaves_stage_and_children_unchanged(self, session):
        req = _create(session, keywords=["keep"])
        with patch.object(session, "commit", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(SQLAlchemyError):
                services.update_request(session, req.id, RequestUpdate(
                    current_stage="REVIEW", keywords=["drop"], title="Changed",
                ), now=NOW + timedelta(days=1))

        fresh = services.get_request(session, req.id)
        assert fresh.current_stage == "IDEATION"
        assert fresh.title == "Stitching for long legs"
        assert [k.keyword for k in fresh.keywords] == ["keep"]
        rows = session.execute(select(StageHistory).where(StageHistory.request_id == req.id)).scalars().all()
        assert [(r.stage, r.exited_at) for r in rows] == [("IDEATION", None)]

    def test_not_found(self, session):
        with pytest.raises(RequestNotFound):
            services.update_request(session, "missing", RequestUpdate(title="x"))


class TestDeleteRequest:
    def test_removes_all_child_rows(self, session, groups):
        req = _create(session, keywords=["k"], rd_group_ids=[groups["UI/UX"]], technical_notes="n")
        set_stage_target(session, req.id, "REVIEW", "2026-07-01", SALES)
        services.delete_request(session, req.id)

        for model in (RequestKeyword, RequestRDGroup, RequestTechArea, StageHistory,
                      StageTarget, StageTargetHistory):
            assert session.execute(select(model).where(model.request_id == req.id)).scalars().all() == []
        with pytest.raises(RequestNotFound):
            services.get_request(session, req.id)

    def test_other_requests_untouched(self, session):
        keep = _create(session, title="Keep me")
        drop = _create(session, title="Drop me")
        services.delete_request(session, drop.id)
        assert services.get_request(session, keep.id).title == "Keep me"

    def test_not_found(self, session):
        with pytest.raises(RequestNotFound):
            services.delete_request(session, "missing")


class TestQueryRequests:
    @pytest.fixture()
    def mixed(self, session):
        specs = [
            ("A", "C_ARM", "REVIEW", 5),
            ("B", "MAMMO", "REVIEW", 3),
            ("C", "MAMMO", "IDEATION", 1),
            ("D", "DENTAL", "REVIEW", 2),
            ("E", "C_ARM", "PROJECT", 4),
        ]
        for title, area, stage, deadline_days in specs:
            req = _create(
                session, title=title, product_area=area,
                customer_deadline=NOW + timedelta(days=deadline_days),
                keywords=[f"kw-{title.lower()}"],
            )
            if stage != "IDEATION":
                change_stage(session, req, stage, NOW + timedelta(hours=1))
                session.commit()

    def test_areas_and_stage_compose(self, session, mixed):
        items, total = services.query_requests(session, product_areas="C_ARM,MAMMO", stages="REVIEW")
        assert total == 2
        assert [i["title"] for i in items] == ["B", "A"]

    def test_list_inputs(self, session, mixed):
        _, total = services.query_requests(session, product_areas=["C_ARM", "MAMMO"])
        assert total == 4

    def test_no_filters_ordered_by_deadline(self, session, mixed):
        items, total = services.query_requests(session)
        assert total == 5
        assert [i["title"] for i in items] == ["C", "D", "B", "E", "A"]

    def test_pagination(self, session, mixed):
        items, total = services.query_requests(session, limit=2, offset=2)
        assert total == 5
        assert [i["title"] for i in items] == ["B", "E"]

    def test_text_and_keyword(self, session, mixed):
        _create(session, title="Dose report export", raw_customer_text="RDSR please")
        items, _ = services.query_requests(session, q="RDSR")
        assert [i["title"] for i in items] == ["Dose report export"]
        items, _ = services.query_requests(session, keyword="kw-d")
        assert [i["title"] for i in items] == ["D"]

    def test_wildcards_match_literally(self, session):
        _create(session, title="Plain title", keywords=["dose"])
        _create(session, title="Dose 100% report", keywords=["dose_map"])
        items, total = services.query_requests(session, q="_")
        assert total == 0
        items, _ = services.query_requests(session, q="100%")
        assert [i["title"] for i in items] == ["Dose 100% report"]
        items, _ = services.query_requests(session, keyword="e_m")
        assert [i["title"] for i in items] == ["Dose 100% report"]
        _, total = services.query_requests(session, keyword="%")
        assert total == 0

    def test_stage_alias(self, session, mixed):
        req = _create(session, title="Done")
        change_stage(session, req, "RELEASE", NOW + timedelta(hours=2))
        session.commit()
        items, _ = services.query_requests(session, stages="COMPLETE")
        assert [i["title"] for i in items] == ["Done"]

    def test_date_range(self, session):
        _create(session, title="Old", now=NOW - timedelta(days=30))
        _create(session, title="New", now=NOW)
        items, _ = services.query_requests(session, from_date="2026-06-01", to_date="2026-06-30")
        assert [i["title"] for i in items] == ["New"]

    def test_invalid_date(self, session):
        with pytest.raises(ValidationError, match="Invalid date range"):
            services.query_requests(session, from_date="yesterday")

    def test_rd_group_filter(self, session, groups):
        _create(session, title="Linked", rd_group_ids=[groups["UI/UX"]])
        _create(session, title="Unlinked")
        items, _ = services.query_requests(session, rd_group_id=groups["UI/UX"])
        assert [i["title"] for i in items] == ["Linked"]


class TestSimilarRequests:
    def test_match_and_order(self, session):
        _create(session, title="Stitching v1", now=NOW - timedelta(days=3))
        _create(session, title="Stitching v2", now=NOW)
        _create(session, title="Stitching mammo", product_area="MAMMO")
        rows = services.similar_requests(session, "C_ARM", "Stitching")
        assert [r["title"] for r in rows] == ["Stitching v2", "Stitching v1"]

    def test_wildcards_match_literally(self, session):
        _create(session, title="Plain stitching")
        _create(session, title="Stitching 100% coverage")
        rows = services.similar_requests(session, "C_ARM", "100%")
        assert [r["title"] for r in rows] == ["Stitching 100% coverage"]
        assert services.similar_requests(session, "C_ARM", "_") == []

    def test_requires_area_and_query(self, session):
        with pytest.raises(ValidationError):
            services.similar_requests(session, "C_ARM", "")


class TestHighValue:
    def test_top_twenty_percent_of_ten(self, session):
        for i in range(1, 11):
            _create(session, title=f"R{i}", expected_revenue=i * 1_000_000,
                    customer_deadline=NOW + timedelta(days=20 - i))
        rows = services.high_value_requests(session)
        # R10 has the earlier deadline of the top two
        assert [r["title"] for r in rows] == ["R10", "R9"]

    def test_at_least_one(self, session):
        _create(session, title="Only", expected_revenue=10)
        _create(session, title="Unknown revenue")
        assert [r["title"] for r in services.high_value_requests(session)] == ["Only"]

    def test_empty(self, session):
        assert services.high_value_requests(session) == []


class TestTransitionStats:
    def _buckets(self, result) -> dict[str, list[dict]]:
        return {b["key"]: b["items"] for b in result["transitions"]}

    def test_all_buckets_present_when_empty(self, session):
        result = services.stage_transition_stats(session, 7, now=NOW)
        assert result["window_days"] == 7
        assert [b["key"] for b in result["transitions"]] == [
            "IDEATION_TO_REVIEW", "REVIEW_TO_CONFIRM", "CONFIRM_TO_PROJECT",
            "PROJECT_TO_RELEASE", "ANY_TO_REJECTED",
        ]
        assert all(b["items"] == [] for b in result["transitions"])

    def test_transitions_bucketed(self, session):
        req = _create(session, now=NOW - timedelta(days=30))
        change_stage(session, req, "REVIEW", NOW - timedelta(days=20))
        change_stage(session, req, "CONFIRM", NOW - timedelta(days=2))
        session.commit()

        buckets = self._buckets(services.stage_transition_stats(session, 7, now=NOW))
        assert [i["request_id"] for i in buckets["REVIEW_TO_CONFIRM"]] == [req.id]
        assert buckets["REVIEW_TO_CONFIRM"][0]["from_stage"] == "REVIEW"
        assert buckets["IDEATION_TO_REVIEW"] == []

    def test_complete_counts_as_release(self, session):
        a = _create(session, title="A", now=NOW - timedelta(days=10))
        b = _create(session, title="B", now=NOW - timedelta(days=10))
        for req, final in ((a, "RELEASE"), (b, "RELEASE")):
            change_stage(session, req, "PROJECT", NOW - timedelta(days=5))
            change_stage(session, req, final, NOW - timedelta(days=1))
        session.commit()
        # legacy row recorded before the rename
        legacy = session.execute(
            select(StageHistory).where(StageHistory.request_id == b.id, StageHistory.stage == "RELEASE")
        ).scalars().one()
        legacy.stage = "COMPLETE"
        session.commit()

        buckets = self._buckets(services.stage_transition_stats(session, 7, now=NOW))
        assert {i["title"] for i in buckets["PROJECT_TO_RELEASE"]} == {"A", "B"}
        assert all(i["to_stage"] == "RELEASE" for i in buckets["PROJECT_TO_RELEASE"])

    def test_latest_per_request(self, session):
        req = _create(session, now=NOW - timedelta(days=6))
        change_stage(session, req, "REJECTED", NOW - timedelta(days=5))
        change_stage(session, req, "IDEATION", NOW - timedelta(days=4))
        change_stage(session, req, "REJECTED", NOW - timedelta(days=1))
        session.commit()

        items = self._buckets(services.stage_transition_stats(session, 7, now=NOW))["ANY_TO_REJECTED"]
        assert len(items) == 1
        assert items[0]["entered_at"] == (NOW - timedelta(days=1)).isoformat()

    def test_window_is_clamped(self, session):
        assert services.stage_transition_stats(session, 0, now=NOW)["window_days"] == 7
        assert services.stage_transition_stats(session, 1000, now=NOW)["window_days"] == 365
        assert services.stage_transition_stats(session, "abc", now=NOW)["window_days"] == 7
        assert services.stage_transition_stats(session, "30", now=NOW)["window_days"] == 30


class TestKeywordStats:
    def test_counts_this_year(self, session):
        _create(session, keywords=["dose", "ai"], now=NOW)
        _create(session, keywords=["dose"], now=NOW)
        _create(session, keywords=["dose", "legacy"], now=datetime(2025, 12, 31))
        rows = services.keyword_stats(session, since=datetime(2026, 1, 1))
        assert rows == [{"keyword": "dose", "count": 2}, {"keyword": "ai", "count": 1}]


class TestRDGroupLoad:
    def test_counts_active_requests_only(self, session, groups):
        ui = groups["UI/UX"]
        _create(session, rd_group_ids=[ui])
        done = _create(session, rd_group_ids=[ui])
        change_stage(session, done, "RELEASE", NOW + timedelta(days=1))
        session.commit()

        rows = {r["group"]: r for r in services.rd_group_load(session)}
        assert len(rows) == len(DEFAULT_RD_GROUPS)
        assert rows["UI/UX"]["active_requests"] == 1
        assert rows["Mechanical Design"]["active_requests"] == 0


class TestListRDGroups:
    def test_sorted_by_name(self, session):
        names = [g["name"] for g in services.list_rd_groups(session)]
        assert names == sorted(names)
        assert len(names) == len(DEFAULT_RD_GROUPS)
