"""
Tests for ChannelSessionService - session lifecycle against the fake backend
"""
import httpx
import pytest

from govconnect.core.circuit_breaker import CircuitBreaker
from govconnect.core.exceptions import (
    BackendError,
    InvalidStateTransitionError,
    SessionNotFoundError,
    ValidationException,
)
from govconnect.domain.services.audit import AuditActionType, AuditOutcome
from govconnect.domain.services.backend_client import BackendClient
from govconnect.domain.services.channel_session_service import (
    ChannelSessionService,
    is_already_connected_error,
    is_session_absent_error,
    is_session_exists_error,
)
from govconnect.domain.services.notifications import NotificationLevel
from govconnect.state_machine.states import ChannelSessionState
from tests.fake_backend import TENANT_A, TENANT_B

NUMBER = "6281234567890"


class _Scope:
    def __init__(self):
        self.cancelled = False

    async def cancel(self):
        self.cancelled = True


class TestErrorMatchers:

    @pytest.mark.unit
    def test_absent_by_status_or_text(self):
        assert is_session_absent_error(BackendError("whatever", status_code=404))
        assert is_session_absent_error(BackendError("Session belum dibuat", status_code=400))
        assert not is_session_absent_error(BackendError("boom", status_code=500))

    @pytest.mark.unit
    def test_already_connected(self):
        assert is_already_connected_error(BackendError("Session already connected", status_code=400))
        assert is_already_connected_error("WhatsApp sudah terhubung")
        assert not is_already_connected_error(None)

    @pytest.mark.unit
    def test_already_exists(self):
        assert is_session_exists_error(BackendError("Session already exists", status_code=409))
        assert not is_session_exists_error(BackendError("Conflict", status_code=409))


class TestCreateAndStatus:

    @pytest.mark.integration
    async def test_create_session(self, session_service, notifier):
        result = await session_service.create_session(TENANT_A)

        assert not result.existing
        assert session_service.state(TENANT_A) == ChannelSessionState.SESSION_CREATED
        assert notifier.last.level == NotificationLevel.SUCCESS

    @pytest.mark.integration
    async def test_create_twice_reports_existing(self, session_service, notifier):
        await session_service.create_session(TENANT_A)
        result = await session_service.create_session(TENANT_A)

        assert result.existing
        assert notifier.last.level == NotificationLevel.INFO

    @pytest.mark.integration
    async def test_status_without_session_is_absent_not_error(self, session_service, notifier):
        session = await session_service.get_status(TENANT_A)

        assert session is not None
        assert not session.exists
        assert session_service.state(TENANT_A) == ChannelSessionState.NO_SESSION
        assert notifier.items == []

    @pytest.mark.integration
    async def test_failed_status_keeps_snapshot(self, session_service, backend_state):
        backend_state.create_session(TENANT_A)
        backend_state.login(TENANT_A, NUMBER)
        await session_service.get_status(TENANT_A)

        backend_state.fail("GET", "/channel/status", status_code=500)
        assert await session_service.get_status(TENANT_A) is None

        snapshot = session_service.snapshot(TENANT_A)
        assert snapshot.logged_in
        assert snapshot.phone_number == NUMBER
        assert session_service.state(TENANT_A) == ChannelSessionState.LOGGED_IN

    @pytest.mark.integration
    async def test_backend_jump_is_followed(self, session_service, backend_state):
        await session_service.get_status(TENANT_A)
        backend_state.login(TENANT_A, NUMBER)

        session = await session_service.get_status(TENANT_A)

        assert session.logged_in
        assert session_service.state(TENANT_A) == ChannelSessionState.LOGGED_IN


class TestConnectAndQr:

    @pytest.mark.integration
    async def test_connect_without_session(self, session_service, notifier):
        with pytest.raises(SessionNotFoundError):
            await session_service.initiate_connect(TENANT_A)

        assert notifier.last.level == NotificationLevel.ERROR

    @pytest.mark.integration
    async def test_connect_starts_pairing_and_qr_is_data_uri(self, session_service):
        await session_service.create_session(TENANT_A)

        assert await session_service.initiate_connect(TENANT_A) is False
        assert session_service.state(TENANT_A) == ChannelSessionState.PAIRING

        qr = await session_service.fetch_qr(TENANT_A)
        assert qr.startswith("data:image/png;base64,")
        assert session_service.snapshot(TENANT_A).qr_payload == qr

    @pytest.mark.integration
    async def test_connect_when_logged_in_is_success(self, session_service, backend_state):
        backend_state.login(TENANT_A, NUMBER)

        assert await session_service.initiate_connect(TENANT_A) is True
        assert await session_service.fetch_qr(TENANT_A) is None

    @pytest.mark.integration
    async def test_active_pairing_keeps_qr_across_status_reads(self, session_service):
        await session_service.create_session(TENANT_A)
        session_service.register_pairing(TENANT_A, _Scope())
        await session_service.initiate_connect(TENANT_A)
        qr = await session_service.fetch_qr(TENANT_A)

        await session_service.get_status(TENANT_A)

        assert session_service.state(TENANT_A) == ChannelSessionState.PAIRING
        assert session_service.snapshot(TENANT_A).qr_payload == qr

    @pytest.mark.integration
    async def test_without_pairing_status_settles_to_created(self, session_service):
        await session_service.create_session(TENANT_A)
        await session_service.initiate_connect(TENANT_A)

        await session_service.get_status(TENANT_A)

        assert session_service.state(TENANT_A) == ChannelSessionState.SESSION_CREATED


class TestDuplicate:

    @pytest.mark.integration
    async def test_number_owned_by_other_tenant(self, session_service, backend_state):
        backend_state.create_session(TENANT_B, name="Desa Mekarsari")
        backend_state.login(TENANT_B, NUMBER)

        info = await session_service.check_duplicate(TENANT_A, "0812-3456-7890")

        assert info.is_duplicate
        assert info.owning_tenant_id == TENANT_B
        assert info.owning_tenant_name == "Desa Mekarsari"
        assert info.phone_number == NUMBER
        assert backend_state.calls("GET", "/channel/check-duplicate")[-1]["params"]["number"] == NUMBER

    @pytest.mark.integration
    async def test_free_number(self, session_service):
        info = await session_service.check_duplicate(TENANT_A, NUMBER)
        assert not info.is_duplicate

    @pytest.mark.unit
    async def test_owned_by_self_is_not_duplicate(self):
        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "data": {"isDuplicate": True, "existingVillageId": TENANT_A},
            })

        client = BackendClient(
            base_url="http://backend.test",
            token="test-token",
            transport=httpx.MockTransport(handler),
            circuit_breaker=CircuitBreaker("duplicate-test"),
        )
        service = ChannelSessionService(client)
        info = await service.check_duplicate(TENANT_A, NUMBER)
        await client.aclose()

        assert not info.is_duplicate

    @pytest.mark.unit
    async def test_empty_number_rejected_before_request(self, session_service, backend_state):
        with pytest.raises(ValidationException):
            await session_service.check_duplicate(TENANT_A, " - ")
        assert backend_state.calls("GET", "/channel/check-duplicate") == []

    @pytest.mark.integration
    async def test_check_failure_returns_none(self, session_service, backend_state):
        backend_state.fail("GET", "/channel/check-duplicate", status_code=503, times=5)
        assert await session_service.check_duplicate(TENANT_A, NUMBER) is None


class TestForceDisconnect:

    @pytest.mark.integration
    async def test_force_disconnect_rebinds_number(self, session_service, backend_state, audit_trail):
        backend_state.create_session(TENANT_B)
        backend_state.login(TENANT_B, NUMBER)
        await session_service.get_status(TENANT_B)
        backend_state.login(TENANT_A, NUMBER)

        session = await session_service.resolve_duplicate_by_force(TENANT_A, TENANT_B, actor="admin-1")

        assert session.logged_in
        assert backend_state.number_owners[NUMBER] == TENANT_A
        assert not backend_state.sessions[TENANT_B].logged_in
        assert session_service.state(TENANT_B) == ChannelSessionState.DISCONNECTED
        request = backend_state.calls("POST", "/channel/force-disconnect")[-1]
        assert request["json"] == {"targetTenantId": TENANT_B}

        outcomes = [r.outcome for r in audit_trail.records]
        assert outcomes == [AuditOutcome.ATTEMPTED, AuditOutcome.SUCCEEDED]
        assert all(r.action == AuditActionType.FORCE_DISCONNECT for r in audit_trail.records)
        assert audit_trail.records[0].actor == "admin-1"
        assert audit_trail.records[0].target == TENANT_B

        info = await session_service.check_duplicate(TENANT_A, NUMBER)
        assert not info.is_duplicate

    @pytest.mark.integration
    async def test_force_disconnect_clears_target_snapshot(self, session_service, backend_state):
        backend_state.create_session(TENANT_B)
        backend_state.login(TENANT_B, NUMBER)
        await session_service.get_status(TENANT_B)
        assert session_service.snapshot(TENANT_B).logged_in
        backend_state.login(TENANT_A, NUMBER)

        await session_service.resolve_duplicate_by_force(TENANT_A, TENANT_B)

        stale = session_service.snapshot(TENANT_B)
        assert session_service.state(TENANT_B) == ChannelSessionState.DISCONNECTED
        assert not stale.logged_in
        assert not stale.connected
        assert stale.qr_payload is None
        assert stale.phone_number == NUMBER

    @pytest.mark.unit
    @pytest.mark.parametrize("target", ["", TENANT_A])
    async def test_invalid_target_rejected(self, session_service, audit_trail, target):
        with pytest.raises(ValidationException):
            await session_service.resolve_duplicate_by_force(TENANT_A, target)
        assert audit_trail.records == ()

    @pytest.mark.integration
    async def test_failure_is_audited_and_raised(self, session_service, backend_state, audit_trail, notifier):
        backend_state.fail("POST", "/channel/force-disconnect", status_code=500, error="Channel service down")

        with pytest.raises(BackendError):
            await session_service.resolve_duplicate_by_force(TENANT_A, TENANT_B)

        assert [r.outcome for r in audit_trail.records] == [AuditOutcome.ATTEMPTED, AuditOutcome.FAILED]
        assert audit_trail.records[-1].details["error"] == "Channel service down"
        assert notifier.last.level == NotificationLevel.ERROR

    @pytest.mark.integration
    async def test_resolve_by_self_deletes_own_session(self, session_service, backend_state):
        backend_state.login(TENANT_A, NUMBER)

        await session_service.resolve_duplicate_by_self(TENANT_A)

        assert TENANT_A not in backend_state.sessions
        assert session_service.state(TENANT_A) == ChannelSessionState.NO_SESSION


class TestDisconnectAndDelete:

    @pytest.mark.integration
    async def test_disconnect_then_status_stays_disconnected(self, session_service, backend_state):
        backend_state.login(TENANT_A, NUMBER)
        await session_service.get_status(TENANT_A)

        await session_service.disconnect(TENANT_A)
        assert session_service.state(TENANT_A) == ChannelSessionState.DISCONNECTED
        assert not session_service.snapshot(TENANT_A).logged_in

        await session_service.get_status(TENANT_A)
        assert session_service.state(TENANT_A) == ChannelSessionState.DISCONNECTED

    @pytest.mark.unit
    async def test_disconnect_without_session_rejected(self, session_service, backend_state):
        await session_service.get_status(TENANT_A)

        with pytest.raises(InvalidStateTransitionError):
            await session_service.disconnect(TENANT_A)
        assert backend_state.calls("POST", "/channel/disconnect") == []

    @pytest.mark.integration
    async def test_delete_session(self, session_service, backend_state, audit_trail):
        await session_service.create_session(TENANT_A)

        await session_service.delete_session(TENANT_A, actor="admin-1")

        assert TENANT_A not in backend_state.sessions
        assert session_service.state(TENANT_A) == ChannelSessionState.NO_SESSION
        record = audit_trail.records[-1]
        assert record.action == AuditActionType.SESSION_DELETED
        assert record.outcome == AuditOutcome.SUCCEEDED

    @pytest.mark.integration
    async def test_delete_missing_session_is_tolerated(self, session_service):
        await session_service.delete_session(TENANT_A)
        assert session_service.state(TENANT_A) == ChannelSessionState.NO_SESSION

    @pytest.mark.integration
    async def test_delete_cancels_pairing_first(self, session_service):
        await session_service.create_session(TENANT_A)
        scope = _Scope()
        session_service.register_pairing(TENANT_A, scope)

        await session_service.delete_session(TENANT_A)

        assert scope.cancelled
        assert not session_service.has_active_pairing(TENANT_A)


class TestSettings:

    @pytest.mark.integration
    async def test_update_and_read_back(self, session_service, backend_state):
        updated = await session_service.update_settings(TENANT_A, enabled_webchat=True)

        assert updated.enabled_webchat
        assert not updated.enabled_wa
        assert backend_state.calls("PUT", "/channel/settings")[-1]["json"] == {"enabled_webchat": True}
        assert (await session_service.get_settings(TENANT_A)).enabled_webchat

    @pytest.mark.unit
    async def test_nothing_to_update(self, session_service):
        with pytest.raises(ValidationException):
            await session_service.update_settings(TENANT_A)
