"""
Certification Reset Service.

Administrative cleanup of certification records and winner sign-offs for a
category, a contest, an event or the whole tenant. Score certification is
left untouched: reversing certified scores only happens through consensus.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from eventscore.errors import NotFoundError, ValidationError
from eventscore.orm.certification import Certification
from eventscore.orm.competition import Event, Contest, Category
from eventscore.orm.winner_signature import WinnerSignature
from eventscore.rbac import Actor, Capability, require_capability

logger = logging.getLogger(__name__)


class CertificationResetService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def reset(
        self,
        actor: Actor,
        category_id: Optional[str] = None,
        contest_id: Optional[str] = None,
        event_id: Optional[str] = None,
        reset_all: bool = False
    ) -> Dict[str, Any]:
        """
        Delete certifications and winner signatures in scope.
        The narrowest supplied scope wins: category, then contest, then event.
        """
        require_capability(actor, Capability.RESET_CERTIFICATIONS)
        tenant_id = actor.tenant_id

        if category_id:
            await self._require(Category, category_id, tenant_id)
            scope = {"level": "category", "id": category_id}
            cert_filter = Certification.category_id == category_id
            category_ids = select(Category.id).where(Category.id == category_id)
        elif contest_id:
            await self._require(Contest, contest_id, tenant_id)
            scope = {"level": "contest", "id": contest_id}
            cert_filter = Certification.contest_id == contest_id
            category_ids = select(Category.id).where(Category.contest_id == contest_id)
        elif event_id:
            await self._require(Event, event_id, tenant_id)
            scope = {"level": "event", "id": event_id}
            cert_filter = Certification.event_id == event_id
            category_ids = (
                select(Category.id)
                .join(Contest, Contest.id == Category.contest_id)
                .where(Contest.event_id == event_id)
            )
        elif reset_all:
            scope = {"level": "all", "id": None}
            cert_filter = None
            category_ids = None
        else:
            raise ValidationError("A reset scope (category, contest, event or all) is required")

        try:
            cert_stmt = delete(Certification).where(Certification.tenant_id == tenant_id)
            if cert_filter is not None:
                cert_stmt = cert_stmt.where(cert_filter)
            certs_deleted = (await self.db.execute(
                cert_stmt.execution_options(synchronize_session=False)
            )).rowcount or 0

            sig_stmt = delete(WinnerSignature).where(WinnerSignature.tenant_id == tenant_id)
            if category_ids is not None:
                sig_stmt = sig_stmt.where(
                    WinnerSignature.category_id.in_(category_ids.where(Category.tenant_id == tenant_id))
                )
            signatures_deleted = (await self.db.execute(
                sig_stmt.execution_options(synchronize_session=False)
            )).rowcount or 0

            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.warning(
            f"Certification reset ({scope['level']} {scope['id'] or ''}) by {actor.user_id}: "
            f"{certs_deleted} certifications, {signatures_deleted} winner signatures deleted"
        )
        return {
            "scope": scope,
            "certifications_deleted": certs_deleted,
            "winner_signatures_deleted": signatures_deleted,
        }

    async def _require(self, model, identifier: str, tenant_id: str) -> None:
        found = (await self.db.execute(
            select(model.id).where(model.id == identifier, model.tenant_id == tenant_id)
        )).scalar_one_or_none()
        if not found:
            raise NotFoundError(model.__name__, identifier)
