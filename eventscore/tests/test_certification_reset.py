"""
Administrative certification reset.
"""
import pytest
from sqlalchemy import select, func

from eventscore.errors import NotFoundError, ValidationError, UnauthorizedError
from eventscore.orm.certification import Certification, ScopeLevel
from eventscore.orm.winner_signature import WinnerSignature
from eventscore.services.certification_reset_service import CertificationResetService
from eventscore.services.certification_state_machine import CertificationStateMachine
from eventscore.services.winner_engine import WinnerComputationEngine
from eventscore.tests.conftest import fetch_scores


async def count(db, model):
    return (await db.execute(select(func.count(model.id)))).scalar_one()


class TestReset:

    @pytest.mark.asyncio
    async def test_category_reset(self, db, seeded, board, auditor, admin):
        machine = CertificationStateMachine(db)
        await machine.certify_all(seeded.event_id, board)
        await machine.create(ScopeLevel.CONTEST, seeded.contest_id, board)
        await WinnerComputationEngine(db).sign_winners(seeded.category_id, auditor)

        result = await CertificationResetService(db).reset(admin, category_id=seeded.category_id)

        assert result["scope"] == {"level": "category", "id": seeded.category_id}
        assert result["certifications_deleted"] == 1
        assert result["winner_signatures_deleted"] == 1
        assert await count(db, Certification) == 2

    @pytest.mark.asyncio
    async def test_event_reset_leaves_scores_certified(self, db, seeded, board, admin):
        await CertificationStateMachine(db).certify_all(seeded.event_id, board)

        result = await CertificationResetService(db).reset(admin, event_id=seeded.event_id)

        assert result["certifications_deleted"] == 2
        assert await count(db, Certification) == 0
        assert all(s.is_certified for s in await fetch_scores(db, seeded.category_id))

    @pytest.mark.asyncio
    async def test_reset_all(self, db, seeded, board, tally_master, admin):
        await CertificationStateMachine(db).certify_all(seeded.event_id, board)
        await WinnerComputationEngine(db).sign_winners(seeded.empty_category_id, tally_master)

        result = await CertificationResetService(db).reset(admin, reset_all=True)

        assert result["scope"]["level"] == "all"
        assert result["certifications_deleted"] == 2
        assert await count(db, WinnerSignature) == 0

    @pytest.mark.asyncio
    async def test_scope_required(self, db, seeded, admin):
        with pytest.raises(ValidationError):
            await CertificationResetService(db).reset(admin)

    @pytest.mark.asyncio
    async def test_admin_only(self, db, seeded, board):
        with pytest.raises(UnauthorizedError):
            await CertificationResetService(db).reset(board, reset_all=True)

    @pytest.mark.asyncio
    async def test_unknown_contest(self, db, seeded, admin):
        with pytest.raises(NotFoundError):
            await CertificationResetService(db).reset(admin, contest_id="missing")
