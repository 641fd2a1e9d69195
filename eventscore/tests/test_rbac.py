"""
Capability matrix and token handling.
"""
from datetime import timedelta

import pytest

from eventscore.errors import UnauthorizedError, ErrorCode
from eventscore.rbac import (
    Capability, Role, CAPABILITY_MATRIX, actor_from_claims, create_access_token,
    decode_token, has_capability, require_capability
)
from eventscore.tests.conftest import make_actor


class TestCapabilityMatrix:

    def test_every_capability_is_mapped(self):
        assert set(CAPABILITY_MATRIX) == set(Capability)

    @pytest.mark.parametrize("capability,role", [
        (Capability.CERTIFY_JUDGE_STAGE, Role.JUDGE),
        (Capability.CERTIFY_TALLY_STAGE, Role.TALLY_MASTER),
        (Capability.CERTIFY_AUDITOR_STAGE, Role.AUDITOR),
        (Capability.APPROVE_BOARD, Role.BOARD),
        (Capability.APPROVE_BOARD, Role.ORGANIZER),
    ])
    def test_stage_owners(self, capability, role):
        assert has_capability(role, capability)

    def test_stages_are_not_interchangeable(self):
        assert not has_capability(Role.TALLY_MASTER, Capability.CERTIFY_AUDITOR_STAGE)
        assert not has_capability(Role.AUDITOR, Capability.CERTIFY_TALLY_STAGE)
        assert not has_capability(Role.JUDGE, Capability.APPROVE_BOARD)

    def test_admin_has_everything(self):
        assert all(has_capability(Role.ADMIN, c) for c in Capability)

    def test_require_capability_error(self):
        with pytest.raises(UnauthorizedError) as exc:
            require_capability(make_actor(Role.JUDGE), Capability.RESET_CERTIFICATIONS)
        assert exc.value.code == ErrorCode.PERMISSION_DENIED
        assert exc.value.status_code == 403
        assert exc.value.details["current_role"] == "JUDGE"


class TestTokens:

    def test_round_trip(self):
        token = create_access_token("u-1", Role.AUDITOR, "tenant-1", name="Ada")
        actor = actor_from_claims(decode_token(token))

        assert actor.user_id == "u-1"
        assert actor.role == Role.AUDITOR
        assert actor.tenant_id == "tenant-1"
        assert actor.display_name == "Ada"

    def test_expired_token(self):
        token = create_access_token("u-1", Role.AUDITOR, "tenant-1", expires_delta=timedelta(seconds=-1))
        assert decode_token(token) is None

    def test_tampered_token(self):
        token = create_access_token("u-1", Role.AUDITOR, "tenant-1")
        assert decode_token(token[:-2] + "xx") is None

    def test_unknown_role_claim(self):
        assert actor_from_claims({"sub": "u", "tenant_id": "t", "role": "WIZARD", "type": "access"}) is None

    def test_missing_tenant_claim(self):
        assert actor_from_claims({"sub": "u", "role": "BOARD", "type": "access"}) is None
