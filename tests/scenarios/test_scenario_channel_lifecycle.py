"""
Scenario 1 - channel lifecycle of one village, end to end

Covers:
- create -> QR pairing -> logged in -> disconnect -> re-pair -> delete
- duplicate number: village B pairs a number village A already owns, then
  force-disconnects village A
"""
import pytest

from govconnect.domain.services.audit import AuditActionType, AuditOutcome
from govconnect.domain.services.pairing import PairingOutcome, PairingSession
from govconnect.state_machine.states import ChannelSessionState
from tests.fake_backend import TENANT_A, TENANT_B

NUMBER = "6281234567890"
FAST = {"status_interval": 0.01, "qr_interval": 0.01}


@pytest.mark.scenario
class TestChannelLifecycle:
    """One village from an empty account to a deleted session"""

    async def test_full_lifecycle(self, session_service, backend_state):
        # nothing yet: absence is normal flow
        await session_service.get_status(TENANT_A)
        assert session_service.state(TENANT_A) == ChannelSessionState.NO_SESSION

        await session_service.create_session(TENANT_A)
        assert session_service.state(TENANT_A) == ChannelSessionState.SESSION_CREATED

        # pair
        async with PairingSession(session_service, TENANT_A, **FAST) as pairing:
            backend_state.scan_qr(TENANT_A, NUMBER, after_polls=1)
            result = await pairing.wait(timeout=2)
        assert result.outcome == PairingOutcome.LOGGED_IN
        assert session_service.snapshot(TENANT_A).phone_number == NUMBER

        # log out, the session record stays
        await session_service.disconnect(TENANT_A)
        await session_service.get_status(TENANT_A)
        assert session_service.state(TENANT_A) == ChannelSessionState.DISCONNECTED
        assert TENANT_A in backend_state.sessions

        # pair again from DISCONNECTED
        async with PairingSession(session_service, TENANT_A, **FAST) as pairing:
            backend_state.scan_qr(TENANT_A, NUMBER)
            result = await pairing.wait(timeout=2)
        assert result.outcome == PairingOutcome.LOGGED_IN
        assert session_service.state(TENANT_A) == ChannelSessionState.LOGGED_IN

        await session_service.delete_session(TENANT_A, actor="admin-1")
        assert session_service.state(TENANT_A) == ChannelSessionState.NO_SESSION
        assert NUMBER not in backend_state.number_owners


@pytest.mark.scenario
class TestDuplicateNumberResolution:
    """Village B scans with a number that belongs to village A"""

    async def test_force_disconnect_other_village(self, session_service, backend_state, audit_trail):
        backend_state.create_session(TENANT_A, name="Desa Sukamaju")
        backend_state.login(TENANT_A, NUMBER)
        await session_service.create_session(TENANT_B)

        async with PairingSession(session_service, TENANT_B, **FAST) as pairing:
            backend_state.scan_qr(TENANT_B, NUMBER)
            result = await pairing.wait(timeout=2)

        assert result.outcome == PairingOutcome.DUPLICATE
        assert result.duplicate.owning_tenant_name == "Desa Sukamaju"

        session = await session_service.resolve_duplicate_by_force(
            TENANT_B, result.duplicate.owning_tenant_id, actor="operator-b"
        )

        assert session.logged_in
        assert backend_state.number_owners[NUMBER] == TENANT_B
        assert not backend_state.sessions[TENANT_A].logged_in
        assert not (await session_service.check_duplicate(TENANT_B, NUMBER)).is_duplicate

        forced = [r for r in audit_trail.records if r.action == AuditActionType.FORCE_DISCONNECT]
        assert [r.outcome for r in forced] == [AuditOutcome.ATTEMPTED, AuditOutcome.SUCCEEDED]
        assert all(r.tenant_id == TENANT_B and r.target == TENANT_A for r in forced)
        assert len(audit_trail.for_tenant(TENANT_A)) == 2

    async def test_give_up_the_number(self, session_service, backend_state):
        backend_state.create_session(TENANT_A)
        backend_state.login(TENANT_A, NUMBER)
        await session_service.create_session(TENANT_B)

        async with PairingSession(session_service, TENANT_B, **FAST) as pairing:
            backend_state.scan_qr(TENANT_B, NUMBER)
            result = await pairing.wait(timeout=2)
        assert result.outcome == PairingOutcome.DUPLICATE

        await session_service.resolve_duplicate_by_self(TENANT_B)

        assert TENANT_B not in backend_state.sessions
        assert backend_state.number_owners[NUMBER] == TENANT_A
        assert backend_state.sessions[TENANT_A].logged_in
