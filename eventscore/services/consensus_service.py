"""
Consensus Request Service.

Multi-signature reversal workflows over certified scores:

- JUDGE_UNCERTIFICATION: uncertify a judge's scores in a category
- SCORE_REMOVAL: delete a judge's scores in a category (optionally one contestant)

Both require the TALLY_MASTER, AUDITOR and BOARD slots to be signed before
execution. ADMIN may fill the BOARD slot. Execution reopens the category
certification and clears its winner sign-offs.

State machine: PENDING → EXECUTED | REJECTED (both terminal).
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from eventscore.config.feature_flags import feature_flags
from eventscore.errors import (
    ErrorCode, NotFoundError, ValidationError, UnauthorizedError, NotReadyError,
    AlreadyCompletedError, AlreadyTerminalError, DuplicateSignatureError,
    ConcurrentModificationError, validate_not_empty
)
from eventscore.orm.base import utcnow
from eventscore.orm.competition import Contestant, Judge
from eventscore.orm.consensus import (
    ConsensusRequest, ConsensusSignature, ConsensusKind, ConsensusStatus
)
from eventscore.orm.winner_signature import WinnerSignature
from eventscore.rbac import Actor, Capability, Role, require_capability
from eventscore.services.certification_state_machine import CertificationStateMachine
from eventscore.services.score_ledger import ScoreLedger, ScoreScope

logger = logging.getLogger(__name__)


REVERSAL_KINDS = (ConsensusKind.JUDGE_UNCERTIFICATION, ConsensusKind.SCORE_REMOVAL)

# Slot each role signs; ADMIN stands in for the board
REQUIRED_SLOTS: Tuple[str, ...] = (Role.TALLY_MASTER.value, Role.AUDITOR.value, Role.BOARD.value)
ROLE_SLOTS: Dict[Role, str] = {
    Role.TALLY_MASTER: Role.TALLY_MASTER.value,
    Role.AUDITOR: Role.AUDITOR.value,
    Role.BOARD: Role.BOARD.value,
    Role.ADMIN: Role.BOARD.value,
}

KIND_LABELS = {
    ConsensusKind.JUDGE_UNCERTIFICATION: "Judge uncertification",
    ConsensusKind.SCORE_REMOVAL: "Score removal",
}


def open_subject_key(
    tenant_id: str,
    kind: ConsensusKind,
    category_id: str,
    judge_id: Optional[str],
    contestant_id: Optional[str]
) -> str:
    return f"{tenant_id}:{kind.value}:{category_id}:{judge_id or '-'}:{contestant_id or '-'}"


def slot_for(actor: Actor, requested_role: Optional[str] = None) -> str:
    """
    Resolve which reversal slot the actor fills.
    A requested role must match the actor's own slot.
    """
    slot = ROLE_SLOTS.get(actor.role)
    if slot is None:
        raise UnauthorizedError(
            "Your signature is not required for this request",
            details={"current_role": actor.role.value, "required_slots": list(REQUIRED_SLOTS)}
        )
    if requested_role and requested_role.strip().upper() != slot:
        raise UnauthorizedError(
            f"Role {actor.role.value} cannot sign the {requested_role.strip().upper()} slot",
            details={"current_role": actor.role.value, "slot": slot}
        )
    return slot


def missing_slots(request: ConsensusRequest) -> List[str]:
    signed = {s.slot for s in request.signatures}
    return [slot for slot in REQUIRED_SLOTS if slot not in signed]


def all_signatures_present(request: ConsensusRequest) -> bool:
    return not missing_slots(request)


class ConsensusService:

    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[ScoreLedger] = None,
        state_machine: Optional[CertificationStateMachine] = None
    ):
        self.db = db
        self.ledger = ledger or ScoreLedger(db)
        self.state_machine = state_machine or CertificationStateMachine(db, self.ledger)

    # =========================================================================
    # Create
    # =========================================================================

    async def create(
        self,
        kind: ConsensusKind,
        category_id: Optional[str],
        judge_id: Optional[str],
        reason: Optional[str],
        actor: Actor,
        contestant_id: Optional[str] = None
    ) -> ConsensusRequest:
        """
        Open a reversal request.

        Validations:
        - Actor is BOARD or ADMIN
        - Judge, category and reason present; judge / category / contestant exist
        - No other PENDING request for the same subject (when blocking is enabled)
        """
        kind = ConsensusKind(kind)
        if kind not in REVERSAL_KINDS:
            raise ValidationError(f"{kind.value} is not a reversal request kind")
        require_capability(actor, Capability.CREATE_REVERSAL)

        if not judge_id or not category_id or not reason or not reason.strip():
            raise ValidationError(
                "Judge ID, category ID, and reason are required",
                code=ErrorCode.MISSING_FIELD
            )
        reason = reason.strip()
        if kind == ConsensusKind.JUDGE_UNCERTIFICATION:
            contestant_id = None

        await self.ledger.get_category(category_id, actor.tenant_id)
        judge = (await self.db.execute(
            select(Judge).where(Judge.id == judge_id, Judge.tenant_id == actor.tenant_id)
        )).scalar_one_or_none()
        if not judge:
            raise NotFoundError("Judge", judge_id)
        if contestant_id:
            contestant = (await self.db.execute(
                select(Contestant).where(
                    Contestant.id == contestant_id,
                    Contestant.tenant_id == actor.tenant_id
                )
            )).scalar_one_or_none()
            if not contestant:
                raise NotFoundError("Contestant", contestant_id)

        subject_key = None
        if feature_flags.FEATURE_BLOCK_DUPLICATE_OPEN_REQUESTS:
            subject_key = open_subject_key(actor.tenant_id, kind, category_id, judge_id, contestant_id)
            open_request = (await self.db.execute(
                select(ConsensusRequest.id).where(ConsensusRequest.open_subject_key == subject_key)
            )).scalar_one_or_none()
            if open_request:
                raise self._duplicate_open(kind, open_request)

        request = ConsensusRequest(
            tenant_id=actor.tenant_id,
            kind=kind,
            category_id=category_id,
            judge_id=judge_id,
            contestant_id=contestant_id,
            reason=reason,
            status=ConsensusStatus.PENDING,
            requested_by=actor.user_id,
            requested_by_role=actor.role.value,
            open_subject_key=subject_key,
        )
        self.db.add(request)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise self._duplicate_open(kind, None)

        logger.info(
            f"{KIND_LABELS[kind]} request {request.id} opened by {actor.user_id} "
            f"for judge {judge_id} in category {category_id}"
        )
        return await self._load(request.id, actor.tenant_id, kind)

    @staticmethod
    def _duplicate_open(kind: ConsensusKind, request_id: Optional[str]) -> AlreadyCompletedError:
        return AlreadyCompletedError(
            f"An open {KIND_LABELS[kind].lower()} request already exists for this subject",
            code=ErrorCode.DUPLICATE_OPEN_REQUEST,
            details={"request_id": request_id} if request_id else None
        )

    # =========================================================================
    # Sign
    # =========================================================================

    async def sign(
        self,
        kind: ConsensusKind,
        request_id: str,
        signer_name: Optional[str],
        actor: Actor,
        role: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Fill the actor's slot.

        The PENDING check, the version bump and the slot insert run in one
        transaction; the version bump takes the row lock first.
        """
        require_capability(actor, Capability.SIGN_REVERSAL)
        signer_name = validate_not_empty(signer_name, "Signature name")
        slot = slot_for(actor, role)

        try:
            await self._lock_pending(request_id, actor.tenant_id, kind)
            request = await self._load(request_id, actor.tenant_id, kind, for_update=True)

            if any(s.slot == slot for s in request.signatures):
                raise DuplicateSignatureError(
                    f"The {slot} signature has already been recorded",
                    details={"request_id": request_id, "slot": slot}
                )

            signature = ConsensusSignature(
                request_id=request.id,
                slot=slot,
                role=actor.role.value,
                user_id=actor.user_id,
                signer_name=signer_name,
                notes=notes,
            )
            self.db.add(signature)
            try:
                await self.db.flush()
            except IntegrityError:
                raise DuplicateSignatureError(
                    f"The {slot} signature has already been recorded",
                    details={"request_id": request_id, "slot": slot}
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        request = await self._load(request_id, actor.tenant_id, kind)
        logger.info(f"Request {request_id} signed in slot {slot} by {actor.user_id}")
        return self.describe(request)

    # =========================================================================
    # Execute / reject
    # =========================================================================

    async def execute(self, kind: ConsensusKind, request_id: str, actor: Actor) -> Dict[str, Any]:
        """
        Apply the reversal effect once every slot is signed.

        Validations:
        - Request exists and is PENDING (404 / 409)
        - TALLY_MASTER, AUDITOR and BOARD slots all signed (400)
        """
        require_capability(actor, Capability.EXECUTE_REVERSAL)

        try:
            request = await self._load(request_id, actor.tenant_id, kind, for_update=True)
            if request.status != ConsensusStatus.PENDING:
                raise AlreadyTerminalError(
                    f"Request is already {request.status.value}",
                    details={"request_id": request_id, "status": request.status.value}
                )
            missing = missing_slots(request)
            if missing:
                raise NotReadyError(
                    "All required signatures must be collected before execution",
                    details={"request_id": request_id, "missing_slots": missing}
                )

            now = utcnow()
            result = await self.db.execute(
                update(ConsensusRequest)
                .where(
                    ConsensusRequest.id == request_id,
                    ConsensusRequest.status == ConsensusStatus.PENDING,
                    ConsensusRequest.version == request.version,
                )
                .values(
                    status=ConsensusStatus.EXECUTED,
                    executed_by=actor.user_id,
                    executed_at=now,
                    open_subject_key=None,
                    version=ConsensusRequest.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._raise_not_pending(request_id, actor.tenant_id, kind)

            scope = ScoreScope(
                category_id=request.category_id,
                judge_id=request.judge_id,
                contestant_id=request.contestant_id,
            )
            if request.kind == ConsensusKind.JUDGE_UNCERTIFICATION:
                count = await self.ledger.uncertify_scores(scope, actor.tenant_id)
            else:
                count = await self.ledger.delete_scores(scope, actor.tenant_id)

            reopened = await self.state_machine.reopen(request.category_id, actor.tenant_id)
            cleared = await self._clear_winner_signatures(request.category_id, actor.tenant_id)

            await self.db.execute(
                update(ConsensusRequest)
                .where(ConsensusRequest.id == request_id)
                .values(result_count=count)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(
            f"{KIND_LABELS[request.kind]} request {request_id} executed by {actor.user_id}: "
            f"{count} scores affected, certification reopened={reopened}, "
            f"{cleared} winner signatures cleared"
        )
        request = await self._load(request_id, actor.tenant_id, kind)
        return {
            **self.describe(request),
            "affected_count": count,
            "certification_reopened": reopened,
            "winner_signatures_cleared": cleared,
        }

    async def reject(
        self,
        kind: ConsensusKind,
        request_id: str,
        reason: Optional[str],
        actor: Actor
    ) -> Dict[str, Any]:
        require_capability(actor, Capability.REJECT_REVERSAL)
        reason = validate_not_empty(reason, "Rejection reason")

        now = utcnow()
        try:
            result = await self.db.execute(
                update(ConsensusRequest)
                .where(
                    ConsensusRequest.id == request_id,
                    ConsensusRequest.tenant_id == actor.tenant_id,
                    ConsensusRequest.kind == kind,
                    ConsensusRequest.status == ConsensusStatus.PENDING,
                )
                .values(
                    status=ConsensusStatus.REJECTED,
                    rejected_by=actor.user_id,
                    rejected_at=now,
                    rejection_reason=reason,
                    open_subject_key=None,
                    version=ConsensusRequest.version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self._raise_not_pending(request_id, actor.tenant_id, kind)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Request {request_id} rejected by {actor.user_id}: {reason}")
        return self.describe(await self._load(request_id, actor.tenant_id, kind))

    # =========================================================================
    # Queries
    # =========================================================================

    async def list(
        self,
        kind: ConsensusKind,
        actor: Actor,
        status: Optional[ConsensusStatus] = None
    ) -> List[Dict[str, Any]]:
        require_capability(actor, Capability.VIEW_REVERSALS)
        query = select(ConsensusRequest).where(
            ConsensusRequest.tenant_id == actor.tenant_id,
            ConsensusRequest.kind == kind,
        )
        if status:
            query = query.where(ConsensusRequest.status == status)
        result = await self.db.execute(
            query.order_by(ConsensusRequest.created_at.desc(), ConsensusRequest.id)
        )
        return [self.describe(r) for r in result.scalars().all()]

    async def get(self, kind: ConsensusKind, request_id: str, actor: Actor) -> Dict[str, Any]:
        require_capability(actor, Capability.VIEW_REVERSALS)
        return self.describe(await self._load(request_id, actor.tenant_id, kind))

    @staticmethod
    def describe(request: ConsensusRequest) -> Dict[str, Any]:
        return {
            **request.to_dict(),
            "required_slots": list(REQUIRED_SLOTS),
            "missing_slots": missing_slots(request),
            "all_signatures_present": all_signatures_present(request),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load(
        self,
        request_id: str,
        tenant_id: str,
        kind: ConsensusKind,
        for_update: bool = False
    ) -> ConsensusRequest:
        query = select(ConsensusRequest).where(
            ConsensusRequest.id == request_id,
            ConsensusRequest.tenant_id == tenant_id,
            ConsensusRequest.kind == kind,
        ).options(
            selectinload(ConsensusRequest.signatures)
        ).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        request = (await self.db.execute(query)).scalar_one_or_none()
        if not request:
            raise NotFoundError(f"{KIND_LABELS.get(kind, 'Consensus')} request", request_id)
        return request

    async def _lock_pending(self, request_id: str, tenant_id: str, kind: ConsensusKind) -> None:
        """Bump the version of a PENDING request; classify when nothing matched."""
        result = await self.db.execute(
            update(ConsensusRequest)
            .where(
                ConsensusRequest.id == request_id,
                ConsensusRequest.tenant_id == tenant_id,
                ConsensusRequest.kind == kind,
                ConsensusRequest.status == ConsensusStatus.PENDING,
            )
            .values(version=ConsensusRequest.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._raise_not_pending(request_id, tenant_id, kind)

    async def _raise_not_pending(self, request_id: str, tenant_id: str, kind: ConsensusKind) -> None:
        request = await self._load(request_id, tenant_id, kind)
        if request.status != ConsensusStatus.PENDING:
            raise AlreadyTerminalError(
                f"Request is already {request.status.value}",
                details={"request_id": request_id, "status": request.status.value}
            )
        raise ConcurrentModificationError(
            "Request changed while it was being updated; retry the request",
            details={"request_id": request_id, "version": request.version}
        )

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
