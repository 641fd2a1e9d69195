"""
Deduction Approval Service.

A deduction is a consensus request whose approvals are evaluated by role
coverage instead of fixed slots. Full approval requires:

- a head judge (satisfied by the requester when they are head judge)
- a tally master
- an auditor
- a board member (BOARD, ORGANIZER or ADMIN)

Each user approves at most once. The deduction is applied exactly once, in
the same transaction as the approval that completes coverage. Applying it
changes totals, so existing winner sign-offs for the category are cleared.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from eventscore.errors import (
    NotFoundError, ValidationError, AlreadyCompletedError, AlreadyTerminalError,
    ConcurrentModificationError, validate_not_empty
)
from eventscore.orm.base import utcnow
from eventscore.orm.competition import Contestant, Judge
from eventscore.orm.consensus import (
    ConsensusRequest, ConsensusSignature, ConsensusKind, ConsensusStatus
)
from eventscore.orm.score import Score
from eventscore.orm.winner_signature import WinnerSignature
from eventscore.rbac import Actor, Capability, Role, require_capability
from eventscore.services.score_ledger import ScoreLedger, to_decimal

logger = logging.getLogger(__name__)


BOARD_ROLES = {Role.BOARD.value, Role.ORGANIZER.value, Role.ADMIN.value}
REQUIRED_APPROVALS = 4


def calculate_approval_status(
    request: ConsensusRequest,
    approvals: Sequence[ConsensusSignature]
) -> Dict[str, Any]:
    """Role coverage for a deduction request."""
    has_head_judge = bool(request.requester_is_head_judge) or any(a.is_head_judge for a in approvals)
    has_tally_master = any(a.role == Role.TALLY_MASTER.value for a in approvals)
    has_auditor = any(a.role == Role.AUDITOR.value for a in approvals)
    has_board = any(a.role in BOARD_ROLES for a in approvals)

    required = REQUIRED_APPROVALS - (1 if request.requester_is_head_judge else 0)
    return {
        "has_head_judge_approval": has_head_judge,
        "has_tally_master_approval": has_tally_master,
        "has_auditor_approval": has_auditor,
        "has_board_approval": has_board,
        "is_fully_approved": has_head_judge and has_tally_master and has_auditor and has_board,
        "approval_count": len(approvals),
        "required_approvals": required,
    }


class DeductionService:

    def __init__(self, db: AsyncSession, ledger: Optional[ScoreLedger] = None):
        self.db = db
        self.ledger = ledger or ScoreLedger(db)

    async def create_deduction(
        self,
        category_id: str,
        contestant_id: str,
        amount,
        reason: Optional[str],
        actor: Actor
    ) -> Dict[str, Any]:
        """
        Open a deduction request against a contestant in a category.

        Validations:
        - amount > 0
        - reason present
        - category and contestant exist in the actor's tenant
        """
        require_capability(actor, Capability.CREATE_DEDUCTION)
        reason = validate_not_empty(reason, "Reason")
        value = to_decimal(amount)
        if value <= 0:
            raise ValidationError("Deduction amount must be greater than zero", details={"amount": str(value)})

        category = await self.ledger.get_category(category_id, actor.tenant_id)
        contestant = (await self.db.execute(
            select(Contestant).where(
                Contestant.id == contestant_id,
                Contestant.tenant_id == actor.tenant_id
            )
        )).scalar_one_or_none()
        if not contestant:
            raise NotFoundError("Contestant", contestant_id)

        event_id = await self.ledger.get_event_id_for_category(category)
        requester_is_head_judge = await self._is_head_judge(actor, event_id)

        request = ConsensusRequest(
            tenant_id=actor.tenant_id,
            kind=ConsensusKind.DEDUCTION,
            category_id=category_id,
            contestant_id=contestant_id,
            amount=value,
            reason=reason,
            status=ConsensusStatus.PENDING,
            requested_by=actor.user_id,
            requested_by_role=actor.role.value,
            requester_is_head_judge=requester_is_head_judge,
        )
        self.db.add(request)
        await self.db.commit()

        logger.info(
            f"Deduction request {request.id} of {value} for contestant {contestant_id} "
            f"in category {category_id} opened by {actor.user_id}"
        )
        return self.describe(await self._load(request.id, actor.tenant_id))

    async def approve_deduction(
        self,
        request_id: str,
        actor: Actor,
        signature: Optional[str],
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record the actor's approval and apply the deduction once coverage is complete.

        Validations:
        - signature present (400)
        - request exists (404) and is PENDING (409)
        - actor has not approved this request before (409)
        """
        require_capability(actor, Capability.APPROVE_DEDUCTION)
        signature = validate_not_empty(signature, "Signature")

        applied = False
        cleared = 0
        try:
            result = await self.db.execute(
                update(ConsensusRequest)
                .where(
                    ConsensusRequest.id == request_id,
                    ConsensusRequest.tenant_id == actor.tenant_id,
                    ConsensusRequest.kind == ConsensusKind.DEDUCTION,
                    ConsensusRequest.status == ConsensusStatus.PENDING,
                )
                .values(version=ConsensusRequest.version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                request = await self._load(request_id, actor.tenant_id)
                raise AlreadyTerminalError(
                    "Deduction request is not pending",
                    details={"request_id": request_id, "status": request.status.value}
                )

            request = await self._load(request_id, actor.tenant_id, for_update=True)
            if any(a.user_id == actor.user_id for a in request.signatures):
                raise AlreadyCompletedError(
                    "You have already approved this deduction",
                    details={"request_id": request_id}
                )

            event_id = await self.ledger.get_event_id_for_category(
                await self.ledger.get_category(request.category_id, actor.tenant_id)
            )
            approval = ConsensusSignature(
                request_id=request.id,
                slot=actor.user_id,
                role=actor.role.value,
                user_id=actor.user_id,
                signer_name=signature,
                is_head_judge=await self._is_head_judge(actor, event_id),
                notes=notes,
            )
            self.db.add(approval)
            try:
                await self.db.flush()
            except IntegrityError:
                raise AlreadyCompletedError(
                    "You have already approved this deduction",
                    details={"request_id": request_id}
                )

            approvals = await self._approvals(request.id)
            status = calculate_approval_status(request, approvals)

            if status["is_fully_approved"]:
                now = utcnow()
                result = await self.db.execute(
                    update(ConsensusRequest)
                    .where(
                        ConsensusRequest.id == request.id,
                        ConsensusRequest.status == ConsensusStatus.PENDING,
                    )
                    .values(
                        status=ConsensusStatus.APPROVED,
                        executed_by=actor.user_id,
                        executed_at=now,
                        result_count=1,
                        version=ConsensusRequest.version + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentModificationError(
                        "Deduction request changed while it was being approved; retry the request",
                        details={"request_id": request_id}
                    )
                await self.ledger.apply_deduction(request)
                cleared = await self._clear_winner_signatures(request.category_id, actor.tenant_id)
                applied = True

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if applied:
            logger.warning(
                f"Deduction request {request_id} fully approved and applied, "
                f"{cleared} winner signatures cleared"
            )
        else:
            logger.info(f"Deduction request {request_id} approved by {actor.user_id} ({actor.role.value})")

        described = self.describe(await self._load(request_id, actor.tenant_id))
        described["applied"] = applied
        described["winner_signatures_cleared"] = cleared
        return described

    async def reject_deduction(self, request_id: str, actor: Actor, reason: Optional[str]) -> Dict[str, Any]:
        """Terminal and irreversible."""
        require_capability(actor, Capability.REJECT_DEDUCTION)
        reason = validate_not_empty(reason, "Rejection reason")

        now = utcnow()
        try:
            result = await self.db.execute(
                update(ConsensusRequest)
                .where(
                    ConsensusRequest.id == request_id,
                    ConsensusRequest.tenant_id == actor.tenant_id,
                    ConsensusRequest.kind == ConsensusKind.DEDUCTION,
                    ConsensusRequest.status == ConsensusStatus.PENDING,
                )
                .values(
                    status=ConsensusStatus.REJECTED,
                    rejected_by=actor.user_id,
                    rejected_at=now,
                    rejection_reason=reason,
                    version=ConsensusRequest.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                request = await self._load(request_id, actor.tenant_id)
                raise AlreadyTerminalError(
                    "Deduction request is not pending",
                    details={"request_id": request_id, "status": request.status.value}
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Deduction request {request_id} rejected by {actor.user_id}: {reason}")
        return self.describe(await self._load(request_id, actor.tenant_id))

    async def get_pending(self, actor: Actor) -> List[Dict[str, Any]]:
        """PENDING deductions; judges only see categories they have scored."""
        query = select(ConsensusRequest).where(
            ConsensusRequest.tenant_id == actor.tenant_id,
            ConsensusRequest.kind == ConsensusKind.DEDUCTION,
            ConsensusRequest.status == ConsensusStatus.PENDING,
        )
        if actor.role == Role.JUDGE:
            judged_categories = (
                select(Score.category_id)
                .join(Judge, Judge.id == Score.judge_id)
                .where(Judge.user_id == actor.user_id, Judge.tenant_id == actor.tenant_id)
                .distinct()
            )
            query = query.where(ConsensusRequest.category_id.in_(judged_categories))

        result = await self.db.execute(query.order_by(ConsensusRequest.created_at, ConsensusRequest.id))
        return [self.describe(r) for r in result.scalars().all()]

    async def get_approval_status(self, request_id: str, actor: Actor) -> Dict[str, Any]:
        return self.describe(await self._load(request_id, actor.tenant_id))

    @staticmethod
    def describe(request: ConsensusRequest) -> Dict[str, Any]:
        return {
            **request.to_dict(),
            "approval_status": calculate_approval_status(request, request.signatures),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load(self, request_id: str, tenant_id: str, for_update: bool = False) -> ConsensusRequest:
        query = select(ConsensusRequest).where(
            ConsensusRequest.id == request_id,
            ConsensusRequest.tenant_id == tenant_id,
            ConsensusRequest.kind == ConsensusKind.DEDUCTION,
        ).options(
            selectinload(ConsensusRequest.signatures)
        ).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        request = (await self.db.execute(query)).scalar_one_or_none()
        if not request:
            raise NotFoundError("Deduction request", request_id)
        return request

    async def _approvals(self, request_id: str) -> List[ConsensusSignature]:
        result = await self.db.execute(
            select(ConsensusSignature)
            .where(ConsensusSignature.request_id == request_id)
            .order_by(ConsensusSignature.signed_at)
        )
        return list(result.scalars().all())

    async def _is_head_judge(self, actor: Actor, event_id: str) -> bool:
        result = await self.db.execute(
            select(Judge.id).where(
                Judge.tenant_id == actor.tenant_id,
                Judge.event_id == event_id,
                Judge.user_id == actor.user_id,
                Judge.is_head_judge.is_(True),
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None


    async def _clear_winner_signatures(self, category_id: str, tenant_id: str) -> int:
        result = await self.db.execute(
            delete(WinnerSignature)
            .where(
                WinnerSignature.tenant_id == tenant_id,
                WinnerSignature.category_id == category_id
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
