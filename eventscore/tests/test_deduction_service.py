"""
Deduction approvals: role coverage, head judge shortcut, apply-once.
"""
from decimal import Decimal
from types import SimpleNamespace

import pytest

from eventscore.errors import (
    NotFoundError, ValidationError, UnauthorizedError, AlreadyCompletedError, AlreadyTerminalError
)
from eventscore.orm.consensus import ConsensusStatus
from eventscore.rbac import Role
from eventscore.services.deduction_service import DeductionService, calculate_approval_status
from eventscore.services.score_ledger import ScoreLedger
from eventscore.services.winner_engine import WinnerComputationEngine
from eventscore.tests.conftest import make_actor


def approval(role, is_head_judge=False):
    return SimpleNamespace(role=role.value, is_head_judge=is_head_judge, user_id=f"{role.value}-x")


class TestApprovalStatus:

    def test_requires_all_four_roles(self):
        request = SimpleNamespace(requester_is_head_judge=False)
        status = calculate_approval_status(request, [
            approval(Role.JUDGE, is_head_judge=True),
            approval(Role.TALLY_MASTER),
            approval(Role.AUDITOR),
        ])
        assert status["is_fully_approved"] is False
        assert status["has_board_approval"] is False
        assert status["required_approvals"] == 4

    def test_organizer_counts_as_board(self):
        request = SimpleNamespace(requester_is_head_judge=False)
        status = calculate_approval_status(request, [
            approval(Role.JUDGE, is_head_judge=True),
            approval(Role.TALLY_MASTER),
            approval(Role.AUDITOR),
            approval(Role.ORGANIZER),
        ])
        assert status["is_fully_approved"] is True
        assert status["approval_count"] == 4

    def test_head_judge_requester_needs_three(self):
        request = SimpleNamespace(requester_is_head_judge=True)
        status = calculate_approval_status(request, [
            approval(Role.TALLY_MASTER), approval(Role.AUDITOR), approval(Role.BOARD),
        ])
        assert status["has_head_judge_approval"] is True
        assert status["required_approvals"] == 3
        assert status["is_fully_approved"] is True

    def test_plain_judge_is_not_head_judge(self):
        request = SimpleNamespace(requester_is_head_judge=False)
        status = calculate_approval_status(request, [approval(Role.JUDGE)])
        assert status["has_head_judge_approval"] is False


class TestCreateDeduction:

    @pytest.mark.asyncio
    async def test_create(self, db, seeded, judge):
        result = await DeductionService(db).create_deduction(
            seeded.category_id, seeded.contestant_ids[0], 5, "Over time", judge
        )
        assert result["status"] == ConsensusStatus.PENDING.value
        assert result["amount"] == 5.0
        assert result["requester_is_head_judge"] is False
        assert result["approval_status"]["approval_count"] == 0

    @pytest.mark.asyncio
    async def test_head_judge_requester_flagged(self, db, seeded, head_judge):
        result = await DeductionService(db).create_deduction(
            seeded.category_id, seeded.contestant_ids[0], 2, "Costume", head_judge
        )
        assert result["requester_is_head_judge"] is True
        assert result["approval_status"]["required_approvals"] == 3

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, db, seeded, judge):
        with pytest.raises(ValidationError) as exc:
            await DeductionService(db).create_deduction(
                seeded.category_id, seeded.contestant_ids[0], 0, "Nothing", judge
            )
        assert exc.value.message == "Deduction amount must be greater than zero"

    @pytest.mark.asyncio
    async def test_reason_required(self, db, seeded, judge):
        with pytest.raises(ValidationError):
            await DeductionService(db).create_deduction(
                seeded.category_id, seeded.contestant_ids[0], 1, None, judge
            )

    @pytest.mark.asyncio
    async def test_unknown_contestant(self, db, seeded, judge):
        with pytest.raises(NotFoundError):
            await DeductionService(db).create_deduction(seeded.category_id, "ghost", 1, "r", judge)


class TestApproveDeduction:

    @pytest.mark.asyncio
    async def test_full_chain_applies_once(self, db, seeded, head_judge, judge, tally_master, auditor, board):
        service = DeductionService(db)
        request = await service.create_deduction(
            seeded.category_id, seeded.contestant_ids[0], "7.5", "Late entry", judge
        )

        result = await service.approve_deduction(request["id"], head_judge, "Head Judge")
        assert result["applied"] is False
        assert result["approval_status"]["has_head_judge_approval"] is True

        await service.approve_deduction(request["id"], tally_master, "Tally")
        await service.approve_deduction(request["id"], auditor, "Auditor")
        result = await service.approve_deduction(request["id"], board, "Board")

        assert result["applied"] is True
        assert result["status"] == ConsensusStatus.APPROVED.value
        assert result["approval_status"]["is_fully_approved"] is True

        totals = await ScoreLedger(db).deduction_totals(seeded.category_id, seeded.tenant_id)
        assert totals[seeded.contestant_ids[0]] == Decimal("7.50")

        with pytest.raises(AlreadyTerminalError):
            await service.approve_deduction(request["id"], make_actor(Role.ADMIN), "Late admin")

    @pytest.mark.asyncio
    async def test_head_judge_requester_skips_head_judge_approval(
        self, db, seeded, head_judge, tally_master, auditor, organizer
    ):
        service = DeductionService(db)
        request = await service.create_deduction(
            seeded.category_id, seeded.contestant_ids[1], 3, "Prop violation", head_judge
        )
        await service.approve_deduction(request["id"], tally_master, "Tally")
        await service.approve_deduction(request["id"], auditor, "Auditor")
        result = await service.approve_deduction(request["id"], organizer, "Organizer")

        assert result["applied"] is True
        assert result["approval_status"]["approval_count"] == 3

    @pytest.mark.asyncio
    async def test_applied_deduction_clears_winner_sign_off(
        self, db, seeded, head_judge, tally_master, auditor, board, judge
    ):
        engine = WinnerComputationEngine(db)
        for actor in (tally_master, auditor, board):
            await engine.sign_winners(seeded.category_id, actor)
        assert (await engine.get_signature_status(seeded.category_id, judge))["can_show_winners"] is True

        service = DeductionService(db)
        request = await service.create_deduction(
            seeded.category_id, seeded.contestant_ids[0], 2, "Costume violation", head_judge
        )
        await service.approve_deduction(request["id"], tally_master, "Tally")
        result = await service.approve_deduction(request["id"], auditor, "Auditor")
        assert result["winner_signatures_cleared"] == 0

        result = await service.approve_deduction(request["id"], board, "Board")
        assert result["applied"] is True
        assert result["winner_signatures_cleared"] == 3

        status = await engine.get_signature_status(seeded.category_id, judge)
        assert status["can_show_winners"] is False
        assert status["signatures"] == []

    @pytest.mark.asyncio
    async def test_same_user_cannot_approve_twice(self, db, seeded, judge, tally_master):
        service = DeductionService(db)
        request = await service.create_deduction(seeded.category_id, seeded.contestant_ids[0], 1, "r", judge)
        await service.approve_deduction(request["id"], tally_master, "Tally")

        with pytest.raises(AlreadyCompletedError) as exc:
            await service.approve_deduction(request["id"], tally_master, "Tally again")
        assert exc.value.message == "You have already approved this deduction"

    @pytest.mark.asyncio
    async def test_signature_required(self, db, seeded, judge, tally_master):
        service = DeductionService(db)
        request = await service.create_deduction(seeded.category_id, seeded.contestant_ids[0], 1, "r", judge)
        with pytest.raises(ValidationError):
            await service.approve_deduction(request["id"], tally_master, " ")

    @pytest.mark.asyncio
    async def test_unknown_request(self, db, seeded, tally_master):
        with pytest.raises(NotFoundError):
            await DeductionService(db).approve_deduction("missing", tally_master, "Tally")


class TestRejectAndQueries:

    @pytest.mark.asyncio
    async def test_reject_is_terminal(self, db, seeded, judge, auditor, tally_master):
        service = DeductionService(db)
        request = await service.create_deduction(seeded.category_id, seeded.contestant_ids[0], 1, "r", judge)

        result = await service.reject_deduction(request["id"], auditor, "Not supported by footage")
        assert result["status"] == ConsensusStatus.REJECTED.value

        with pytest.raises(AlreadyTerminalError) as exc:
            await service.approve_deduction(request["id"], tally_master, "Tally")
        assert exc.value.message == "Deduction request is not pending"

    @pytest.mark.asyncio
    async def test_judge_cannot_reject(self, db, seeded, judge):
        service = DeductionService(db)
        request = await service.create_deduction(seeded.category_id, seeded.contestant_ids[0], 1, "r", judge)
        with pytest.raises(UnauthorizedError):
            await service.reject_deduction(request["id"], judge, "No")

    @pytest.mark.asyncio
    async def test_pending_scoped_for_judges(self, db, seeded, judge, board):
        service = DeductionService(db)
        scored = await service.create_deduction(seeded.category_id, seeded.contestant_ids[0], 1, "a", board)
        unscored = await service.create_deduction(seeded.empty_category_id, seeded.contestant_ids[0], 1, "b", board)

        judge_view = [r["id"] for r in await service.get_pending(judge)]
        board_view = [r["id"] for r in await service.get_pending(board)]

        assert judge_view == [scored["id"]]
        assert set(board_view) == {scored["id"], unscored["id"]}

    @pytest.mark.asyncio
    async def test_get_approval_status(self, db, seeded, judge, tally_master):
        service = DeductionService(db)
        request = await service.create_deduction(seeded.category_id, seeded.contestant_ids[0], 1, "r", judge)
        await service.approve_deduction(request["id"], tally_master, "Tally")

        result = await service.get_approval_status(request["id"], judge)
        assert result["approval_status"]["has_tally_master_approval"] is True
        assert result["approval_status"]["approval_count"] == 1
