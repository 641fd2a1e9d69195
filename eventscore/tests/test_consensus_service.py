"""
Consensus reversals: judge uncertification and score removal.
"""
import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from eventscore.config.feature_flags import FeatureFlags
from eventscore.database import init_db
from eventscore.errors import (
    ErrorCode, NotFoundError, ValidationError, UnauthorizedError, NotReadyError,
    AlreadyCompletedError, AlreadyTerminalError, DuplicateSignatureError,
    ConcurrentModificationError
)
from eventscore.orm.certification import CertificationStatus, ScopeLevel
from eventscore.orm.consensus import ConsensusKind, ConsensusStatus
from eventscore.rbac import Role
from eventscore.services.certification_state_machine import CertificationStateMachine
from eventscore.services.consensus_service import (
    ConsensusService, REQUIRED_SLOTS, open_subject_key, slot_for
)
from eventscore.services.score_ledger import ScoreLedger, ScoreScope
from eventscore.services.winner_engine import WinnerComputationEngine
from eventscore.tests.conftest import fetch_scores, make_actor, seed_event

UNCERTIFY = ConsensusKind.JUDGE_UNCERTIFICATION
REMOVE = ConsensusKind.SCORE_REMOVAL


async def certify_chain(machine, cert_id, head_judge, tally_master, auditor, board):
    await machine.certify_judge(cert_id, head_judge)
    await machine.certify_tally(cert_id, tally_master)
    await machine.certify_auditor(cert_id, auditor)
    return await machine.approve_board(cert_id, board)


async def certified_category(db, seeded, head_judge, tally_master, auditor, board):
    machine = CertificationStateMachine(db)
    cert, _ = await machine.create(ScopeLevel.CATEGORY, seeded.category_id, board)
    return await certify_chain(machine, cert.id, head_judge, tally_master, auditor, board)


async def sign_all(service, kind, request_id, tally_master, auditor, board):
    await service.sign(kind, request_id, "T. Master", tally_master)
    await service.sign(kind, request_id, "A. Uditor", auditor)
    return await service.sign(kind, request_id, "B. Oard", board)


class TestSlots:

    def test_required_slots(self):
        assert REQUIRED_SLOTS == ("TALLY_MASTER", "AUDITOR", "BOARD")

    def test_admin_fills_board_slot(self):
        assert slot_for(make_actor(Role.ADMIN)) == "BOARD"

    def test_judge_has_no_slot(self):
        with pytest.raises(UnauthorizedError):
            slot_for(make_actor(Role.JUDGE))

    def test_requested_role_must_match(self):
        with pytest.raises(UnauthorizedError):
            slot_for(make_actor(Role.AUDITOR), "tally_master")
        assert slot_for(make_actor(Role.AUDITOR), "auditor") == "AUDITOR"

    def test_open_subject_key(self):
        key = open_subject_key("t", REMOVE, "cat", "judge", None)
        assert key == "t:SCORE_REMOVAL:cat:judge:-"


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_pending(self, db, seeded, board):
        request = await ConsensusService(db).create(
            UNCERTIFY, seeded.category_id, seeded.judge_id, "Judge scored wrong sheet", board
        )
        described = ConsensusService.describe(request)

        assert described["status"] == ConsensusStatus.PENDING.value
        assert described["missing_slots"] == list(REQUIRED_SLOTS)
        assert described["all_signatures_present"] is False
        assert described["signatures"] == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, db, seeded, board):
        with pytest.raises(ValidationError) as exc:
            await ConsensusService(db).create(UNCERTIFY, seeded.category_id, None, "reason", board)
        assert exc.value.message == "Judge ID, category ID, and reason are required"

        with pytest.raises(ValidationError):
            await ConsensusService(db).create(UNCERTIFY, seeded.category_id, seeded.judge_id, "  ", board)

    @pytest.mark.asyncio
    async def test_unknown_judge(self, db, seeded, board):
        with pytest.raises(NotFoundError):
            await ConsensusService(db).create(UNCERTIFY, seeded.category_id, "ghost", "reason", board)

    @pytest.mark.asyncio
    async def test_only_board_or_admin_create(self, db, seeded, tally_master):
        with pytest.raises(UnauthorizedError):
            await ConsensusService(db).create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", tally_master)

    @pytest.mark.asyncio
    async def test_duplicate_open_request_blocked(self, db, seeded, board):
        service = ConsensusService(db)
        await service.create(REMOVE, seeded.category_id, seeded.judge_id, "first", board)

        with pytest.raises(AlreadyCompletedError) as exc:
            await service.create(REMOVE, seeded.category_id, seeded.judge_id, "second", board)
        assert exc.value.code == ErrorCode.DUPLICATE_OPEN_REQUEST

    @pytest.mark.asyncio
    async def test_rejected_request_frees_subject(self, db, seeded, board):
        service = ConsensusService(db)
        first = await service.create(REMOVE, seeded.category_id, seeded.judge_id, "first", board)
        await service.reject(REMOVE, first.id, "Filed in error", board)

        second = await service.create(REMOVE, seeded.category_id, seeded.judge_id, "second", board)
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_duplicates_allowed_when_flag_off(self, db, seeded, board, monkeypatch):
        monkeypatch.setattr(FeatureFlags, "FEATURE_BLOCK_DUPLICATE_OPEN_REQUESTS", False)
        service = ConsensusService(db)
        await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "first", board)
        await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "second", board)

        assert len(await service.list(UNCERTIFY, board, ConsensusStatus.PENDING)) == 2


class TestSign:

    @pytest.mark.asyncio
    async def test_sign_fills_slot(self, db, seeded, board, tally_master):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)

        result = await service.sign(UNCERTIFY, request.id, "T. Master", tally_master, notes="Checked sheets")
        assert result["missing_slots"] == ["AUDITOR", "BOARD"]
        assert result["signatures"][0]["slot"] == "TALLY_MASTER"
        assert result["signatures"][0]["notes"] == "Checked sheets"

    @pytest.mark.asyncio
    async def test_same_slot_twice(self, db, seeded, board, auditor):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        await service.sign(UNCERTIFY, request.id, "A. One", auditor)

        second_auditor = make_actor(Role.AUDITOR, "auditor-2")
        with pytest.raises(DuplicateSignatureError) as exc:
            await service.sign(UNCERTIFY, request.id, "A. Two", second_auditor)
        assert exc.value.code == ErrorCode.DUPLICATE_SIGNATURE

    @pytest.mark.asyncio
    async def test_admin_and_board_share_slot(self, db, seeded, board, admin):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        await service.sign(UNCERTIFY, request.id, "Admin", admin)

        with pytest.raises(DuplicateSignatureError):
            await service.sign(UNCERTIFY, request.id, "Board", board)

    @pytest.mark.asyncio
    async def test_signature_name_required(self, db, seeded, board, auditor):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        with pytest.raises(ValidationError):
            await service.sign(UNCERTIFY, request.id, "", auditor)

    @pytest.mark.asyncio
    async def test_judge_cannot_sign(self, db, seeded, board, judge):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        with pytest.raises(UnauthorizedError):
            await service.sign(UNCERTIFY, request.id, "Judge", judge)

    @pytest.mark.asyncio
    async def test_wrong_kind_is_not_found(self, db, seeded, board, auditor):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        with pytest.raises(NotFoundError):
            await service.sign(REMOVE, request.id, "A", auditor)

    @pytest.mark.asyncio
    async def test_cannot_sign_rejected(self, db, seeded, board, auditor):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        await service.reject(UNCERTIFY, request.id, "No", board)
        with pytest.raises(AlreadyTerminalError):
            await service.sign(UNCERTIFY, request.id, "A", auditor)


class TestExecute:

    @pytest.mark.asyncio
    async def test_execute_before_all_signatures(self, db, seeded, board, tally_master):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)
        await service.sign(UNCERTIFY, request.id, "T", tally_master)

        with pytest.raises(NotReadyError) as exc:
            await service.execute(UNCERTIFY, request.id, board)
        assert exc.value.details["missing_slots"] == ["AUDITOR", "BOARD"]

    @pytest.mark.asyncio
    async def test_uncertification_reopens_category(
        self, db, seeded, head_judge, tally_master, auditor, board
    ):
        cert = await certified_category(db, seeded, head_judge, tally_master, auditor, board)
        await WinnerComputationEngine(db).sign_winners(seeded.category_id, tally_master)

        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "Wrong sheet", board)
        signed = await sign_all(service, UNCERTIFY, request.id, tally_master, auditor, board)
        assert signed["all_signatures_present"] is True

        result = await service.execute(UNCERTIFY, request.id, board)

        assert result["status"] == ConsensusStatus.EXECUTED.value
        assert result["affected_count"] == 3
        assert result["result_count"] == 3
        assert result["certification_reopened"] is True
        assert result["winner_signatures_cleared"] == 1

        for score in await fetch_scores(db, seeded.category_id):
            assert score.is_certified == (score.judge_id != seeded.judge_id)

        cert = await CertificationStateMachine(db).get(cert.id, board)
        assert cert.status == CertificationStatus.PENDING
        assert cert.current_step == 1


    @pytest.mark.asyncio
    async def test_execution_reopens_contest_and_event(
        self, db, seeded, head_judge, tally_master, auditor, board, organizer
    ):
        machine = CertificationStateMachine(db)
        await machine.certify_all(seeded.event_id, board)
        contest, _ = await machine.create(ScopeLevel.CONTEST, seeded.contest_id, board)
        contest_cert_id = contest.id
        await certify_chain(machine, contest_cert_id, head_judge, tally_master, auditor, board)
        await machine.certify_organizer(contest_cert_id, organizer)
        event, _ = await machine.create(ScopeLevel.EVENT, seeded.event_id, board)
        event_cert_id = event.id
        await machine.certify_judge(event_cert_id, head_judge)

        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "Wrong sheet", board)
        await sign_all(service, UNCERTIFY, request.id, tally_master, auditor, board)
        await service.execute(UNCERTIFY, request.id, board)

        contest = await machine.get(contest_cert_id, board)
        assert contest.status == CertificationStatus.PENDING
        assert contest.current_step == 1
        assert contest.board_approved is False
        assert contest.organizer_certified is False

        event = await machine.get(event_cert_id, board)
        assert event.status == CertificationStatus.PENDING
        assert event.judge_certified is False

        sibling, created = await machine.create(ScopeLevel.CATEGORY, seeded.empty_category_id, board)
        assert created is False
        assert sibling.status == CertificationStatus.CERTIFIED

    @pytest.mark.asyncio
    async def test_rejected_parent_stays_rejected(self, db, seeded, head_judge, tally_master, auditor, board):
        machine = CertificationStateMachine(db)
        contest, _ = await machine.create(ScopeLevel.CONTEST, seeded.contest_id, board)
        contest_cert_id = contest.id
        await machine.reject(contest_cert_id, "Panel replaced", board)

        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "Wrong sheet", board)
        await sign_all(service, UNCERTIFY, request.id, tally_master, auditor, board)
        await service.execute(UNCERTIFY, request.id, board)

        contest = await machine.get(contest_cert_id, board)
        assert contest.status == CertificationStatus.REJECTED
        assert contest.rejection_reason == "Panel replaced"
    @pytest.mark.asyncio
    async def test_score_removal_for_one_contestant(self, db, seeded, tally_master, auditor, admin):
        service = ConsensusService(db)
        request = await service.create(
            REMOVE, seeded.category_id, seeded.judge_id, "Scored absent contestant", admin,
            contestant_id=seeded.contestant_ids[2],
        )
        await sign_all(service, REMOVE, request.id, tally_master, auditor, admin)

        result = await service.execute(REMOVE, request.id, admin)
        assert result["affected_count"] == 1
        assert result["certification_reopened"] is False

        remaining = await fetch_scores(db, seeded.category_id, judge_id=seeded.judge_id)
        assert {s.contestant_id for s in remaining} == set(seeded.contestant_ids[:2])

    @pytest.mark.asyncio
    async def test_execute_twice(self, db, seeded, tally_master, auditor, board):
        service = ConsensusService(db)
        request = await service.create(REMOVE, seeded.category_id, seeded.judge_id, "r", board)
        await sign_all(service, REMOVE, request.id, tally_master, auditor, board)
        await service.execute(REMOVE, request.id, board)

        with pytest.raises(AlreadyTerminalError):
            await service.execute(REMOVE, request.id, board)

    @pytest.mark.asyncio
    async def test_tally_master_cannot_execute(self, db, seeded, tally_master, auditor, board):
        service = ConsensusService(db)
        request = await service.create(REMOVE, seeded.category_id, seeded.judge_id, "r", board)
        await sign_all(service, REMOVE, request.id, tally_master, auditor, board)
        with pytest.raises(UnauthorizedError):
            await service.execute(REMOVE, request.id, tally_master)


class TestReject:

    @pytest.mark.asyncio
    async def test_reject_is_terminal(self, db, seeded, board):
        service = ConsensusService(db)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "r", board)

        result = await service.reject(UNCERTIFY, request.id, "Not warranted", board)
        assert result["status"] == ConsensusStatus.REJECTED.value
        assert result["rejection_reason"] == "Not warranted"

        with pytest.raises(AlreadyTerminalError):
            await service.reject(UNCERTIFY, request.id, "Again", board)

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, db, seeded, board, auditor):
        service = ConsensusService(db)
        kept = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "keep", board)
        dropped = await service.create(UNCERTIFY, seeded.category_id, seeded.head_judge_id, "drop", board)
        await service.reject(UNCERTIFY, dropped.id, "No", board)

        pending = await service.list(UNCERTIFY, auditor, ConsensusStatus.PENDING)
        assert [r["id"] for r in pending] == [kept.id]
        assert len(await service.list(UNCERTIFY, auditor)) == 2
        assert await service.list(REMOVE, auditor) == []


@pytest_asyncio.fixture
async def race_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'consensus_race.db'}",
        connect_args={"timeout": 30.0},
    )
    await init_db(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


async def open_request(factory, board, signers=()):
    """Seed a file-backed database with certified scores and one open uncertification."""
    async with factory() as session:
        seeded = await seed_event(session)
        await ScoreLedger(session).certify_scores(ScoreScope(seeded.category_id), make_actor(Role.TALLY_MASTER))
        await session.commit()
        service = ConsensusService(session)
        request = await service.create(UNCERTIFY, seeded.category_id, seeded.judge_id, "Wrong sheet", board)
        request_id = request.id
        for name, actor in signers:
            await service.sign(UNCERTIFY, request_id, name, actor)
    return request_id


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_parallel_sign_of_one_slot_succeeds_once(self, race_factory, board, auditor):
        request_id = await open_request(race_factory, board)
        second_auditor = make_actor(Role.AUDITOR, "auditor-2")

        async def attempt(name, actor):
            async with race_factory() as session:
                return await ConsensusService(session).sign(UNCERTIFY, request_id, name, actor)

        results = await asyncio.gather(
            attempt("A. One", auditor), attempt("A. Two", second_auditor), return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], DuplicateSignatureError)

        async with race_factory() as session:
            final = await ConsensusService(session).get(UNCERTIFY, request_id, board)
            assert [s["slot"] for s in final["signatures"]] == ["AUDITOR"]

    @pytest.mark.asyncio
    async def test_parallel_execute_succeeds_once(self, race_factory, tally_master, auditor, board):
        request_id = await open_request(
            race_factory, board,
            signers=(("T. Master", tally_master), ("A. Uditor", auditor), ("B. Oard", board)),
        )

        async def attempt():
            async with race_factory() as session:
                return await ConsensusService(session).execute(UNCERTIFY, request_id, board)

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert successes[0]["affected_count"] == 3
        assert len(failures) == 1
        assert isinstance(failures[0], (AlreadyTerminalError, ConcurrentModificationError))

        async with race_factory() as session:
            final = await ConsensusService(session).get(UNCERTIFY, request_id, board)
            assert final["status"] == ConsensusStatus.EXECUTED.value
            assert final["result_count"] == 3
