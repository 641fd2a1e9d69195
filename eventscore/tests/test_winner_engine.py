"""
Winner computation: ranking, deductions, certified-only counting and sign-off gating.
"""
from decimal import Decimal

import pytest

from eventscore.config.feature_flags import FeatureFlags
from eventscore.errors import NotFoundError
from eventscore.orm.competition import Contestant
from eventscore.orm.consensus import ConsensusKind, ConsensusRequest, ConsensusStatus
from eventscore.orm.score import Score
from eventscore.rbac import Role
from eventscore.services.certification_state_machine import CertificationStateMachine
from eventscore.services.score_ledger import ScoreLedger, ScoreScope
from eventscore.services.winner_engine import (
    WinnerComputationEngine, compute_signature_hash, rank_entries, redact_for
)
from eventscore.tests.conftest import make_actor


class TestRanking:

    def test_competition_ranking_with_ties(self):
        ranked = rank_entries([
            {"contestant_id": "c", "contestant_number": 3, "total_score": 10.0},
            {"contestant_id": "a", "contestant_number": 1, "total_score": 12.0},
            {"contestant_id": "b", "contestant_number": 2, "total_score": 10.0},
            {"contestant_id": "d", "contestant_number": 4, "total_score": 8.0},
        ])
        assert [(e["contestant_id"], e["rank"]) for e in ranked] == [("a", 1), ("b", 2), ("c", 2), ("d", 4)]

    def test_signature_hash_is_sha256(self):
        digest = compute_signature_hash("u", "c", "BOARD", "2024-01-01T00:00:00", None, None)
        assert len(digest) == 64
        assert digest != compute_signature_hash("u", "c", "AUDITOR", "2024-01-01T00:00:00", None, None)

    def test_redaction(self):
        result = {"can_show_winners": False, "winners": [{"rank": 1}]}
        assert redact_for(make_actor(Role.JUDGE), result)["winners"] == []
        assert redact_for(make_actor(Role.JUDGE), result)["winners_withheld"] is True
        assert redact_for(make_actor(Role.BOARD), result)["winners"] == [{"rank": 1}]


class TestCategoryWinners:

    @pytest.mark.asyncio
    async def test_uncertified_scores_not_counted(self, db, seeded, board):
        result = await WinnerComputationEngine(db).get_winners_by_category(seeded.category_id, board)
        assert result["counted_scores"] == "certified"
        assert result["winners"] == []

    @pytest.mark.asyncio
    async def test_all_scores_when_flag_off(self, db, seeded, board, monkeypatch):
        monkeypatch.setattr(FeatureFlags, "FEATURE_WINNERS_CERTIFIED_ONLY", False)
        result = await WinnerComputationEngine(db).get_winners_by_category(seeded.category_id, board)
        assert result["counted_scores"] == "all"
        assert result["contestant_count"] == 3

    @pytest.mark.asyncio
    async def test_ranks_certified_totals(self, db, seeded, board, tally_master):
        await ScoreLedger(db).certify_scores(ScoreScope(seeded.category_id), tally_master)
        await db.commit()

        result = await WinnerComputationEngine(db).get_winners_by_category(seeded.category_id, board)
        winners = result["winners"]

        assert [w["contestant_number"] for w in winners] == [1, 2, 3]
        assert [w["rank"] for w in winners] == [1, 2, 2]
        assert winners[0]["total_score"] == 170.0
        assert result["judge_count"] == 2
        assert result["total_possible_score"] == 200.0
        assert result["can_show_winners"] is False
        assert result["roles_missing"] == ["TALLY_MASTER", "AUDITOR", "BOARD"]

    @pytest.mark.asyncio
    async def test_deductions_change_order(self, db, seeded, board, tally_master):
        ledger = ScoreLedger(db)
        await ledger.certify_scores(ScoreScope(seeded.category_id), tally_master)
        request = ConsensusRequest(
            tenant_id=seeded.tenant_id,
            kind=ConsensusKind.DEDUCTION,
            category_id=seeded.category_id,
            contestant_id=seeded.contestant_ids[1],
            amount=Decimal("10"),
            reason="Over time",
            status=ConsensusStatus.APPROVED,
            requested_by=board.user_id,
            requested_by_role=board.role.value,
        )
        db.add(request)
        await db.flush()
        await ledger.apply_deduction(request)
        await db.commit()

        winners = (await WinnerComputationEngine(db).get_winners_by_category(seeded.category_id, board))["winners"]
        second = winners[1]
        third = winners[2]
        assert second["contestant_number"] == 3
        assert third["contestant_number"] == 2
        assert third["raw_total"] == 145.0
        assert third["deductions"] == 10.0
        assert third["total_score"] == 135.0
        assert third["rank"] == 3

    @pytest.mark.asyncio
    async def test_uncertified_row_ignored_after_category_certified(self, db, seeded, board):
        await CertificationStateMachine(db).certify_all(seeded.event_id, board)
        late = Contestant(tenant_id=seeded.tenant_id, event_id=seeded.event_id, name="Late", contestant_number=9)
        db.add(late)
        await db.flush()
        for judge_id in (seeded.head_judge_id, seeded.judge_id):
            db.add(Score(
                tenant_id=seeded.tenant_id, category_id=seeded.category_id,
                judge_id=judge_id, contestant_id=late.id, score=Decimal("100"),
            ))
        await db.commit()

        result = await WinnerComputationEngine(db).get_winners_by_category(seeded.category_id, board)

        assert result["certification_status"] == "CERTIFIED"
        assert result["counted_scores"] == "certified"
        assert result["winners"][0]["contestant_number"] == 1
        assert result["winners"][0]["total_score"] == 170.0
        assert all(w["contestant_number"] != 9 for w in result["winners"])

    @pytest.mark.asyncio
    async def test_unknown_category(self, db, seeded, board):
        with pytest.raises(NotFoundError):
            await WinnerComputationEngine(db).get_winners_by_category("missing", board)


class TestSignOff:

    @pytest.mark.asyncio
    async def test_signing_is_idempotent(self, db, seeded, auditor):
        engine = WinnerComputationEngine(db)
        first = await engine.sign_winners(seeded.category_id, auditor, "10.0.0.1", "pytest")
        second = await engine.sign_winners(seeded.category_id, auditor, "10.0.0.1", "pytest")

        assert first["already_signed"] is False
        assert second["already_signed"] is True
        assert first["signature"]["signature"] == second["signature"]["signature"]
        assert len(second["signatures"]) == 1

    @pytest.mark.asyncio
    async def test_release_requires_every_role(self, db, seeded, tally_master, auditor, board, judge):
        engine = WinnerComputationEngine(db)
        await engine.sign_winners(seeded.category_id, tally_master)
        await engine.sign_winners(seeded.category_id, auditor)

        status = await engine.get_signature_status(seeded.category_id, judge)
        assert status["can_show_winners"] is False
        assert status["roles_missing"] == ["BOARD"]
        assert status["signed_by_me"] is False

        result = await engine.sign_winners(seeded.category_id, board)
        assert result["can_show_winners"] is True
        assert result["roles_missing"] == []

    @pytest.mark.asyncio
    async def test_admin_does_not_stand_in_for_board(self, db, seeded, tally_master, auditor, admin):
        engine = WinnerComputationEngine(db)
        for actor in (tally_master, auditor, admin):
            await engine.sign_winners(seeded.category_id, actor)

        status = await engine.get_signature_status(seeded.category_id, admin)
        assert status["can_show_winners"] is False
        assert status["signed_by_me"] is True


class TestContestWinners:

    @pytest.mark.asyncio
    async def test_contest_overall(self, db, seeded, board, tally_master):
        await ScoreLedger(db).certify_scores(ScoreScope(seeded.category_id), tally_master)
        await db.commit()

        result = await WinnerComputationEngine(db).get_winners_by_contest(seeded.contest_id, board)

        assert len(result["categories"]) == 2
        assert result["overall"][0]["contestant_number"] == 1
        assert result["overall"][0]["categories_counted"] == 1
        assert result["can_show_winners"] is False

    @pytest.mark.asyncio
    async def test_contest_withholds_for_judges(self, db, seeded, judge, tally_master):
        await ScoreLedger(db).certify_scores(ScoreScope(seeded.category_id), tally_master)
        await db.commit()

        result = await WinnerComputationEngine(db).get_winners_by_contest(seeded.contest_id, judge)
        assert all(c["winners_withheld"] for c in result["categories"])
        assert result["overall"] == []
