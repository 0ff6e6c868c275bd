"""
Channel Session Service - WhatsApp session lifecycle for one tenant (village)

Create, QR pairing, status, duplicate-number resolution, disconnect and
delete, against the channel backend. The service keeps a mirror of the last
known session per tenant; a failed status read never overwrites it.
"""
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from govconnect.core.exceptions import (
    BackendError,
    ExternalServiceException,
    InvalidStateTransitionError,
    SessionNotFoundError,
    ValidationException,
)
from govconnect.core.logging import get_logger, log_async_operation, tenant_context
from govconnect.core.validation import PhoneNumberValidator
from govconnect.domain.services.audit import AuditActionType, AuditOutcome, AuditTrail
from govconnect.domain.services.backend_client import BackendClient
from govconnect.domain.services.notifications import Notifier
from govconnect.schemas.channel import (
    ChannelSession,
    ChannelSettings,
    DuplicateInfo,
    SessionCreateResult,
    extract_qr_from_payload,
)
from govconnect.state_machine.states import ChannelSessionState, is_valid_transition

logger = get_logger(__name__)

# Backend error texts (the channel service answers in Indonesian or English)
_SESSION_ABSENT_MARKERS = ("session belum dibuat", "session not created", "session not found")
_ALREADY_CONNECTED_MARKERS = ("already connected", "sudah terhubung")
_ALREADY_EXISTS_MARKERS = ("already exists", "sudah ada", "sudah dibuat")


def _error_text(error: Any) -> str:
    if isinstance(error, BackendError):
        return error.message.lower()
    return str(error or "").lower()


def is_already_connected_error(error: Any) -> bool:
    """A connect request against a live session; the desired state already holds."""
    text = _error_text(error)
    return any(marker in text for marker in _ALREADY_CONNECTED_MARKERS)


def is_session_absent_error(error: Any) -> bool:
    if isinstance(error, BackendError) and error.http_status == 404:
        return True
    text = _error_text(error)
    return any(marker in text for marker in _SESSION_ABSENT_MARKERS)


def is_session_exists_error(error: Any) -> bool:
    text = _error_text(error)
    return any(marker in text for marker in _ALREADY_EXISTS_MARKERS)


class PairingScope(Protocol):
    """Anything polling on behalf of a tenant's pairing (see pairing.PairingSession)"""

    async def cancel(self) -> None: ...


@dataclass
class _TenantMirror:
    session: Optional[ChannelSession] = None
    state: ChannelSessionState = ChannelSessionState.UNKNOWN


class ChannelSessionService:
    """
    Session manager for tenant WhatsApp channels.

    Mutating operations report through the Notifier and then raise the typed
    error on failure; status reads stay quiet because they run on a timer.
    """

    def __init__(
        self,
        client: BackendClient,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditTrail] = None,
    ) -> None:
        self._client = client
        self.notifier = notifier or Notifier()
        self.audit = audit or AuditTrail()
        self._mirrors: dict[str, _TenantMirror] = {}
        self._pairing_scopes: dict[str, set[PairingScope]] = {}

    # ── mirror ──

    def _mirror(self, tenant_id: str) -> _TenantMirror:
        return self._mirrors.setdefault(tenant_id, _TenantMirror())

    def snapshot(self, tenant_id: str) -> Optional[ChannelSession]:
        """Last known session without I/O (None if never fetched)"""
        return self._mirror(tenant_id).session

    def state(self, tenant_id: str) -> ChannelSessionState:
        return self._mirror(tenant_id).state

    def _apply(
        self,
        tenant_id: str,
        session: ChannelSession,
        state: Optional[ChannelSessionState] = None,
    ) -> ChannelSession:
        mirror = self._mirror(tenant_id)
        previous = mirror.state
        target = state or session.state

        if target == ChannelSessionState.SESSION_CREATED:
            if previous == ChannelSessionState.DISCONNECTED:
                # The backend cannot tell "never paired" from "logged out"
                target = ChannelSessionState.DISCONNECTED
            elif previous == ChannelSessionState.PAIRING and self.has_active_pairing(tenant_id):
                # Status does not carry the QR; keep the one the dialog shows
                target = ChannelSessionState.PAIRING
                if mirror.session and mirror.session.qr_payload and not session.qr_payload:
                    session = session.model_copy(update={"qr_payload": mirror.session.qr_payload})

        if not is_valid_transition(previous.value, target.value):
            # The backend is authoritative; record the jump and follow it
            logger.warning(
                "Unexpected channel session transition",
                extra_data={
                    "tenant_id": tenant_id,
                    "from_state": previous.value,
                    "to_state": target.value,
                },
            )

        mirror.session = session
        mirror.state = target
        return session

    # ── pairing scopes ──

    def register_pairing(self, tenant_id: str, scope: PairingScope) -> None:
        self._pairing_scopes.setdefault(tenant_id, set()).add(scope)

    def unregister_pairing(self, tenant_id: str, scope: PairingScope) -> None:
        scopes = self._pairing_scopes.get(tenant_id)
        if scopes:
            scopes.discard(scope)
            if not scopes:
                del self._pairing_scopes[tenant_id]

    def has_active_pairing(self, tenant_id: str) -> bool:
        return bool(self._pairing_scopes.get(tenant_id))

    async def _stop_pairing(self, tenant_id: str) -> None:
        for scope in list(self._pairing_scopes.get(tenant_id, ())):
            await scope.cancel()
        self._pairing_scopes.pop(tenant_id, None)

    # ── operations ──

    @log_async_operation("create_session")
    async def create_session(self, tenant_id: str) -> SessionCreateResult:
        """Create the tenant's session; an existing one is reported, not an error."""
        with tenant_context(tenant_id):
            try:
                data = await self._client.post("/channel/session", tenant_id=tenant_id)
            except BackendError as exc:
                if not is_session_exists_error(exc):
                    self.notifier.failure("Failed to create session", exc)
                    raise
                result = SessionCreateResult(tenant_id=tenant_id, existing=True)
                self.notifier.info("Session already exists")
                return result

            data = data if isinstance(data, dict) else {}
            existing = bool(data.get("existing") or data.get("already_exists"))
            session = None
            if any(key in data for key in ("connected", "loggedIn", "logged_in", "jid")):
                session = ChannelSession.from_payload(tenant_id, data)

            if session is not None:
                self._apply(tenant_id, session)
            elif self.state(tenant_id) in (ChannelSessionState.UNKNOWN, ChannelSessionState.NO_SESSION):
                self._apply(
                    tenant_id,
                    ChannelSession(tenant_id=tenant_id),
                    ChannelSessionState.SESSION_CREATED,
                )

            if existing:
                self.notifier.info("Session already exists")
            else:
                self.notifier.success("Session created", "Connect WhatsApp to start receiving messages")
            return SessionCreateResult(tenant_id=tenant_id, existing=existing, session=session)

    async def get_status(self, tenant_id: str) -> Optional[ChannelSession]:
        """
        Fetch the session status.

        Returns:
            ChannelSession with exists=False when the tenant has no session,
            the session otherwise, or None when the backend could not be
            asked (the mirrored snapshot is then left untouched).
        """
        with tenant_context(tenant_id):
            try:
                data = await self._client.get("/channel/status", tenant_id=tenant_id)
            except ExternalServiceException as exc:
                if isinstance(exc, BackendError) and is_session_absent_error(exc):
                    return self._apply(tenant_id, ChannelSession.absent(tenant_id))
                logger.warning(
                    "Channel status unavailable",
                    extra_data={"tenant_id": tenant_id, "error": exc.message},
                )
                return None

            if not isinstance(data, dict) or data.get("exists") is False:
                return self._apply(tenant_id, ChannelSession.absent(tenant_id))
            return self._apply(tenant_id, ChannelSession.from_payload(tenant_id, data))

    @log_async_operation("initiate_connect")
    async def initiate_connect(self, tenant_id: str) -> bool:
        """
        Start pairing.

        Returns:
            True if the session was already connected, False if pairing began
        """
        with tenant_context(tenant_id):
            try:
                await self._client.post("/channel/connect", tenant_id=tenant_id)
            except BackendError as exc:
                if is_already_connected_error(exc):
                    logger.info("Channel already connected", extra_data={"tenant_id": tenant_id})
                    return True
                if is_session_absent_error(exc):
                    error = SessionNotFoundError(tenant_id)
                    self.notifier.error("Failed to connect", "Create a session first")
                    raise error from exc
                self.notifier.failure("Failed to connect", exc)
                raise
            except ExternalServiceException as exc:
                self.notifier.failure("Failed to connect", exc)
                raise

            current = self.snapshot(tenant_id) or ChannelSession(tenant_id=tenant_id)
            if not current.exists:
                current = ChannelSession(tenant_id=tenant_id)
            self._apply(tenant_id, current, ChannelSessionState.PAIRING)
            return False

    async def fetch_qr(self, tenant_id: str) -> Optional[str]:
        """Current QR as a data URI; None once the session is logged in."""
        with tenant_context(tenant_id):
            try:
                data = await self._client.get("/channel/qr", tenant_id=tenant_id)
            except BackendError as exc:
                if is_session_absent_error(exc):
                    raise SessionNotFoundError(tenant_id) from exc
                if is_already_connected_error(exc):
                    return None
                raise

            if isinstance(data, dict) and (data.get("loggedIn") or data.get("logged_in")):
                return None

            qr = extract_qr_from_payload(data)
            mirror = self._mirror(tenant_id)
            if qr and mirror.session is not None and mirror.session.exists and not mirror.session.logged_in:
                mirror.session = mirror.session.model_copy(update={"qr_payload": qr})
            return qr

    async def check_duplicate(self, tenant_id: str, phone_number: str) -> Optional[DuplicateInfo]:
        """
        Ask whether the number is bound to another tenant.

        Returns None when the check itself could not be made.
        """
        number = PhoneNumberValidator.normalize(phone_number)
        if not number:
            raise ValidationException("Phone number is required", field="phone_number")

        with tenant_context(tenant_id):
            try:
                data = await self._client.get(
                    "/channel/check-duplicate",
                    tenant_id=tenant_id,
                    params={"number": number},
                )
            except ExternalServiceException as exc:
                logger.warning(
                    "Duplicate check failed",
                    extra_data={
                        "tenant_id": tenant_id,
                        "phone": PhoneNumberValidator.mask(number),
                        "error": exc.message,
                    },
                )
                return None

            info = DuplicateInfo.model_validate({**(data or {}), "phone_number": number})
            if info.is_duplicate and info.owning_tenant_id == tenant_id:
                info = DuplicateInfo(phone_number=number)

            if info.is_duplicate:
                logger.warning(
                    "WhatsApp number bound to another tenant",
                    extra_data={
                        "tenant_id": tenant_id,
                        "phone": PhoneNumberValidator.mask(number),
                        "owning_tenant_id": info.owning_tenant_id,
                    },
                )
            return info

    async def resolve_duplicate_by_self(self, tenant_id: str) -> None:
        """Give the number up: tear down this tenant's own session."""
        await self.delete_session(tenant_id)

    @log_async_operation("resolve_duplicate_by_force")
    async def resolve_duplicate_by_force(
        self,
        tenant_id: str,
        target_tenant_id: str,
        actor: Optional[str] = None,
    ) -> Optional[ChannelSession]:
        """
        Disconnect the number from the tenant that currently owns it.

        Privileged and cross-tenant: audited before the call and again with
        its outcome. Returns the refreshed status of `tenant_id`.
        """
        if not target_tenant_id:
            raise ValidationException("Target tenant is required", field="target_tenant_id")
        if target_tenant_id == tenant_id:
            raise ValidationException(
                "Cannot force-disconnect the requesting tenant", field="target_tenant_id"
            )

        with tenant_context(tenant_id):
            self.audit.record(
                AuditActionType.FORCE_DISCONNECT,
                tenant_id,
                AuditOutcome.ATTEMPTED,
                actor=actor,
                target=target_tenant_id,
            )
            try:
                await self._client.post(
                    "/channel/force-disconnect",
                    tenant_id=tenant_id,
                    json={"targetTenantId": target_tenant_id},
                )
            except ExternalServiceException as exc:
                self.audit.record(
                    AuditActionType.FORCE_DISCONNECT,
                    tenant_id,
                    AuditOutcome.FAILED,
                    actor=actor,
                    target=target_tenant_id,
                    details={"error": exc.message},
                )
                self.notifier.failure("Force disconnect failed", exc)
                raise

            self.audit.record(
                AuditActionType.FORCE_DISCONNECT,
                tenant_id,
                AuditOutcome.SUCCEEDED,
                actor=actor,
                target=target_tenant_id,
            )
            # The other tenant's mirror (if this process holds one) is stale now
            if target_tenant_id in self._mirrors:
                stale = self._mirrors[target_tenant_id]
                stale.state = ChannelSessionState.DISCONNECTED
                if stale.session is not None:
                    stale.session = stale.session.model_copy(
                        update={"connected": False, "logged_in": False, "qr_payload": None}
                    )
            self.notifier.success(
                "Number disconnected from the other village",
                "This village can now use the number",
            )
        return await self.get_status(tenant_id)

    @log_async_operation("disconnect")
    async def disconnect(self, tenant_id: str) -> None:
        """Log the number out; the session record is kept."""
        current = self.state(tenant_id)
        target = ChannelSessionState.DISCONNECTED
        if current != ChannelSessionState.UNKNOWN and not is_valid_transition(current.value, target.value):
            raise InvalidStateTransitionError(current.value, target.value, subject=tenant_id)

        with tenant_context(tenant_id):
            try:
                await self._client.post("/channel/disconnect", tenant_id=tenant_id)
            except ExternalServiceException as exc:
                self.notifier.failure("Failed to disconnect", exc)
                raise

            session = self.snapshot(tenant_id) or ChannelSession(tenant_id=tenant_id)
            session = session.model_copy(
                update={"connected": False, "logged_in": False, "qr_payload": None}
            )
            self._apply(tenant_id, session, target)
            self.notifier.success("WhatsApp disconnected")

    @log_async_operation("delete_session")
    async def delete_session(self, tenant_id: str, actor: Optional[str] = None) -> None:
        """Stop any pairing polls, then delete the session. Ends in NO_SESSION."""
        await self._stop_pairing(tenant_id)

        with tenant_context(tenant_id):
            try:
                await self._client.delete("/channel/session", tenant_id=tenant_id)
            except BackendError as exc:
                if not is_session_absent_error(exc):
                    self.audit.record(
                        AuditActionType.SESSION_DELETED,
                        tenant_id,
                        AuditOutcome.FAILED,
                        actor=actor,
                        details={"error": exc.message},
                    )
                    self.notifier.failure("Failed to delete session", exc)
                    raise
            except ExternalServiceException as exc:
                self.notifier.failure("Failed to delete session", exc)
                raise

            self.audit.record(
                AuditActionType.SESSION_DELETED, tenant_id, AuditOutcome.SUCCEEDED, actor=actor
            )
            self._apply(tenant_id, ChannelSession.absent(tenant_id))
            self.notifier.success("Session deleted")

    async def get_settings(self, tenant_id: str) -> ChannelSettings:
        with tenant_context(tenant_id):
            data = await self._client.get("/channel/settings", tenant_id=tenant_id)
            return ChannelSettings.model_validate(data or {})

    @log_async_operation("update_settings")
    async def update_settings(
        self,
        tenant_id: str,
        *,
        enabled_wa: Optional[bool] = None,
        enabled_webchat: Optional[bool] = None,
    ) -> ChannelSettings:
        """Toggle the WhatsApp and webchat channels"""
        changes = {
            key: value
            for key, value in (("enabled_wa", enabled_wa), ("enabled_webchat", enabled_webchat))
            if value is not None
        }
        if not changes:
            raise ValidationException("No settings to update")

        with tenant_context(tenant_id):
            try:
                data = await self._client.put("/channel/settings", tenant_id=tenant_id, json=changes)
            except ExternalServiceException as exc:
                self.notifier.failure("Failed to save settings", exc)
                raise

            self.notifier.success("Settings saved")
            if isinstance(data, dict) and data:
                return ChannelSettings.model_validate(data)
            return await self.get_settings(tenant_id)
