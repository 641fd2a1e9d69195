"""
eventscore/rbac.py
Role-Based Access Control

One capability matrix shared by every staged certification, consensus and
winner operation. Services call ``require_capability`` with the Actor they
were handed; routes obtain the Actor from the bearer token via
``get_current_actor``.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from eventscore.config.settings import settings
from eventscore.errors import ErrorCode, UnauthorizedError

logger = logging.getLogger(__name__)

# ================= CONFIG =================

ALGORITHM = settings.JWT_ALGORITHM

bearer_scheme = HTTPBearer(auto_error=False)

# ================= ROLES & CAPABILITIES =================


class Role(str, enum.Enum):
    JUDGE = "JUDGE"
    TALLY_MASTER = "TALLY_MASTER"
    AUDITOR = "AUDITOR"
    BOARD = "BOARD"
    ORGANIZER = "ORGANIZER"
    ADMIN = "ADMIN"


class Capability(str, enum.Enum):
    VIEW_CERTIFICATIONS = "view_certifications"
    CREATE_CERTIFICATION = "create_certification"
    CERTIFY_JUDGE_STAGE = "certify_judge_stage"
    CERTIFY_TALLY_STAGE = "certify_tally_stage"
    CERTIFY_AUDITOR_STAGE = "certify_auditor_stage"
    APPROVE_BOARD = "approve_board"
    CERTIFY_ORGANIZER = "certify_organizer"
    REJECT_CERTIFICATION = "reject_certification"
    CERTIFY_ALL = "certify_all"

    RECORD_SCORE = "record_score"
    CERTIFY_SCORES = "certify_scores"

    VIEW_REVERSALS = "view_reversals"
    CREATE_REVERSAL = "create_reversal"
    SIGN_REVERSAL = "sign_reversal"
    EXECUTE_REVERSAL = "execute_reversal"
    REJECT_REVERSAL = "reject_reversal"

    CREATE_DEDUCTION = "create_deduction"
    APPROVE_DEDUCTION = "approve_deduction"
    REJECT_DEDUCTION = "reject_deduction"

    VIEW_WINNERS = "view_winners"
    SIGN_WINNERS = "sign_winners"
    VIEW_UNRELEASED_RESULTS = "view_unreleased_results"

    VIEW_PROGRESS = "view_progress"
    RESET_CERTIFICATIONS = "reset_certifications"


ALL_ROLES: FrozenSet[Role] = frozenset(Role)
STAGE_REVIEWERS: FrozenSet[Role] = frozenset({
    Role.TALLY_MASTER, Role.AUDITOR, Role.BOARD, Role.ORGANIZER, Role.ADMIN,
})

CAPABILITY_MATRIX: Dict[Capability, FrozenSet[Role]] = {
    Capability.VIEW_CERTIFICATIONS: ALL_ROLES,
    Capability.CREATE_CERTIFICATION: ALL_ROLES,
    Capability.CERTIFY_JUDGE_STAGE: frozenset({Role.JUDGE, Role.ADMIN}),
    Capability.CERTIFY_TALLY_STAGE: frozenset({Role.TALLY_MASTER, Role.ADMIN}),
    Capability.CERTIFY_AUDITOR_STAGE: frozenset({Role.AUDITOR, Role.ADMIN}),
    Capability.APPROVE_BOARD: frozenset({Role.BOARD, Role.ORGANIZER, Role.ADMIN}),
    Capability.CERTIFY_ORGANIZER: frozenset({Role.ORGANIZER, Role.ADMIN}),
    Capability.REJECT_CERTIFICATION: STAGE_REVIEWERS,
    Capability.CERTIFY_ALL: frozenset({Role.BOARD, Role.ADMIN}),

    Capability.RECORD_SCORE: frozenset({Role.JUDGE, Role.ADMIN}),
    Capability.CERTIFY_SCORES: frozenset({
        Role.JUDGE, Role.TALLY_MASTER, Role.AUDITOR, Role.BOARD, Role.ADMIN,
    }),

    Capability.VIEW_REVERSALS: STAGE_REVIEWERS,
    Capability.CREATE_REVERSAL: frozenset({Role.BOARD, Role.ADMIN}),
    Capability.SIGN_REVERSAL: frozenset({Role.TALLY_MASTER, Role.AUDITOR, Role.BOARD, Role.ADMIN}),
    Capability.EXECUTE_REVERSAL: frozenset({Role.BOARD, Role.ADMIN}),
    Capability.REJECT_REVERSAL: frozenset({Role.BOARD, Role.ADMIN}),

    Capability.CREATE_DEDUCTION: ALL_ROLES,
    Capability.APPROVE_DEDUCTION: ALL_ROLES,
    Capability.REJECT_DEDUCTION: STAGE_REVIEWERS,

    Capability.VIEW_WINNERS: ALL_ROLES,
    Capability.SIGN_WINNERS: ALL_ROLES,
    Capability.VIEW_UNRELEASED_RESULTS: frozenset({Role.BOARD, Role.ADMIN}),

    Capability.VIEW_PROGRESS: ALL_ROLES,
    Capability.RESET_CERTIFICATIONS: frozenset({Role.ADMIN}),
}


@dataclass(frozen=True)
class Actor:
    """Identity context handed to every service call."""
    user_id: str
    role: Role
    tenant_id: str
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.user_id


def has_capability(role: Role, capability: Capability) -> bool:
    return role in CAPABILITY_MATRIX.get(capability, frozenset())


def require_capability(actor: Actor, capability: Capability) -> None:
    """Raise UnauthorizedError unless the actor's role grants the capability."""
    if not has_capability(actor.role, capability):
        logger.warning(
            f"Access denied: user {actor.user_id} with role {actor.role.value} "
            f"attempted {capability.value}"
        )
        allowed = sorted(r.value for r in CAPABILITY_MATRIX.get(capability, frozenset()))
        raise UnauthorizedError(
            f"This action requires one of: {allowed}",
            details={"capability": capability.value, "current_role": actor.role.value}
        )


# ================= TOKEN UTILS =================

def create_access_token(
    user_id: str,
    role: Role,
    tenant_id: str,
    name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token carrying user id, role and tenant id"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {
        "sub": str(user_id),
        "role": Role(role).value,
        "tenant_id": str(tenant_id),
        "exp": expire,
        "type": "access",
    }
    if name:
        to_encode["name"] = name
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


def actor_from_claims(payload: dict) -> Optional[Actor]:
    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")
    if not user_id or not tenant_id or payload.get("type") != "access":
        return None
    try:
        role = Role(payload.get("role"))
    except ValueError:
        return None
    return Actor(user_id=user_id, role=role, tenant_id=tenant_id, name=payload.get("name"))


# ================= AUTH DEPENDENCIES =================

async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """
    Resolve the Actor from the bearer token.
    Returns 401 if the token is missing, invalid or expired.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "success": False,
            "error": "Unauthorized",
            "message": "Invalid or expired token",
            "code": ErrorCode.AUTH_INVALID
        },
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None or not credentials.credentials:
        raise credentials_exception

    payload = decode_token(credentials.credentials)
    if not payload:
        raise credentials_exception

    actor = actor_from_claims(payload)
    if actor is None:
        raise credentials_exception

    return actor
