"""
QR pairing flow for one tenant.

A PairingSession is the "QR dialog is open" scope. While it is open, the
status is polled every second (login detection) and the QR every two seconds
(codes expire). Both timers stop on login, on close and when the session is
deleted underneath it.
"""
import asyncio
import enum
import inspect
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from govconnect.core.config import settings
from govconnect.core.exceptions import DuplicateNumberConflict
from govconnect.core.logging import get_logger
from govconnect.core.polling import PeriodicTask
from govconnect.core.validation import PhoneNumberValidator
from govconnect.domain.services.channel_session_service import ChannelSessionService
from govconnect.schemas.channel import ChannelSession, DuplicateInfo

logger = get_logger(__name__)

QrCallback = Callable[[str], Union[None, Awaitable[None]]]


class PairingOutcome(str, enum.Enum):
    LOGGED_IN = "logged_in"
    DUPLICATE = "duplicate"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class PairingResult:
    outcome: PairingOutcome
    session: Optional[ChannelSession] = None
    duplicate: Optional[DuplicateInfo] = None
    error: Optional[BaseException] = None


class PairingSession:
    """
    Async context manager around one pairing attempt.

    Usage:
        async with PairingSession(service, tenant_id, on_qr=show) as pairing:
            result = await pairing.wait(timeout=120)
    """

    def __init__(
        self,
        service: ChannelSessionService,
        tenant_id: str,
        *,
        on_qr: Optional[QrCallback] = None,
        status_interval: Optional[float] = None,
        qr_interval: Optional[float] = None,
    ) -> None:
        self._service = service
        self.tenant_id = tenant_id
        self._on_qr = on_qr
        self._status_task = PeriodicTask(
            f"pairing-status:{tenant_id}",
            status_interval or settings.PAIRING_STATUS_INTERVAL_SECONDS,
            self._status_tick,
        )
        self._qr_task = PeriodicTask(
            f"pairing-qr:{tenant_id}",
            qr_interval or settings.PAIRING_QR_INTERVAL_SECONDS,
            self._qr_tick,
        )
        self._done = asyncio.Event()
        self._settling = False
        self._closed = False
        self.qr_payload: Optional[str] = None
        # logged in, but the duplicate check has not answered yet
        self.ownership_unverified = False
        self.result: Optional[PairingResult] = None

    @property
    def polling(self) -> bool:
        return self._status_task.running or self._qr_task.running

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    async def __aenter__(self) -> "PairingSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        """Connect, check the current status, show the first QR and start polling."""
        self._service.register_pairing(self.tenant_id, self)
        try:
            await self._service.initiate_connect(self.tenant_id)
        except Exception as exc:
            self._finish(PairingResult(PairingOutcome.FAILED, error=exc))
            self._service.unregister_pairing(self.tenant_id, self)
            return

        session = await self._service.get_status(self.tenant_id)
        if session is not None and session.logged_in:
            await self._on_logged_in(session)
            return

        await self._qr_task.trigger()
        self._status_task.start()
        self._qr_task.start()

    async def wait(self, timeout: Optional[float] = None) -> PairingResult:
        """Wait for the outcome; raises TimeoutError if none arrives in time."""
        await asyncio.wait_for(self._done.wait(), timeout)
        assert self.result is not None
        return self.result

    async def cancel(self) -> None:
        """Stop polling without the closing status refresh (session is going away)."""
        await self._stop_timers()
        self._finish(PairingResult(PairingOutcome.CANCELLED))
        self._service.unregister_pairing(self.tenant_id, self)
        self._closed = True

    async def close(self) -> None:
        """Dialog closed: stop polling and refresh the status once."""
        if self._closed:
            return
        self._closed = True
        await self._stop_timers()
        self._finish(PairingResult(PairingOutcome.CANCELLED))
        self._service.unregister_pairing(self.tenant_id, self)
        await self._service.get_status(self.tenant_id)

    # ── ticks ──

    async def _status_tick(self) -> None:
        session = await self._service.get_status(self.tenant_id)
        if session is not None and session.logged_in and session.phone_number:
            await self._on_logged_in(session)

    async def _qr_tick(self) -> None:
        if self.finished:
            return
        qr = await self._service.fetch_qr(self.tenant_id)
        if not qr or qr == self.qr_payload:
            return
        self.qr_payload = qr
        if self._on_qr is not None:
            outcome = self._on_qr(qr)
            if inspect.isawaitable(outcome):
                await outcome

    async def _on_logged_in(self, session: ChannelSession) -> None:
        if self._settling or self.finished:
            return
        self._settling = True
        try:
            await self._settle(session)
        finally:
            self._settling = False

    async def _settle(self, session: ChannelSession) -> None:
        await self._qr_task.stop()
        self.qr_payload = None

        duplicate = None
        if session.phone_number:
            duplicate = await self._service.check_duplicate(self.tenant_id, session.phone_number)
            if duplicate is None:
                # Ownership unknown: keep polling status, each tick re-checks
                if not self.ownership_unverified:
                    self.ownership_unverified = True
                    self._service.notifier.warning(
                        "Checking number ownership",
                        "Could not verify the number yet, retrying",
                    )
                logger.warning(
                    "Duplicate check unavailable, pairing not settled",
                    extra_data={
                        "tenant_id": self.tenant_id,
                        "phone": PhoneNumberValidator.mask(session.phone_number),
                    },
                )
                self._status_task.start()
                return

        await self._status_task.stop()
        self.ownership_unverified = False
        logger.info(
            "WhatsApp paired",
            extra_data={
                "tenant_id": self.tenant_id,
                "phone": PhoneNumberValidator.mask(session.phone_number),
            },
        )

        if duplicate is not None and duplicate.is_duplicate:
            self._service.notifier.error(
                "Number already in use",
                f"This number is connected to {duplicate.owning_tenant_name}",
            )
            conflict = DuplicateNumberConflict(
                duplicate.phone_number,
                duplicate.owning_tenant_id or "",
                duplicate.owning_tenant_name,
            )
            self._finish(PairingResult(
                PairingOutcome.DUPLICATE, session=session, duplicate=duplicate, error=conflict
            ))
            return

        self._service.notifier.success("WhatsApp connected", session.phone_number or "")
        self._finish(PairingResult(PairingOutcome.LOGGED_IN, session=session))

    async def _stop_timers(self) -> None:
        await self._status_task.stop()
        await self._qr_task.stop()

    def _finish(self, result: PairingResult) -> None:
        if self.finished:
            return
        self.result = result
        self._done.set()


class SessionStatusWatcher:
    """Slow background status refresh, paused while a pairing dialog is open."""

    def __init__(
        self,
        service: ChannelSessionService,
        tenant_id: str,
        interval: Optional[float] = None,
    ) -> None:
        self._service = service
        self.tenant_id = tenant_id
        self._task = PeriodicTask(
            f"session-status:{tenant_id}",
            interval or settings.SESSION_AUTO_REFRESH_SECONDS,
            self._tick,
        )

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def _tick(self) -> None:
        if self._service.has_active_pairing(self.tenant_id):
            return
        await self._service.get_status(self.tenant_id)

    async def __aenter__(self) -> "SessionStatusWatcher":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
