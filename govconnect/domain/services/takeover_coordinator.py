"""
Takeover Coordinator - AI vs. admin ownership of live-chat conversations

Per conversation it decides who answers the end user (the AI agent or a
human admin), keeps the AI processing status, and holds the selected
conversation's de-duplicated message timeline.

Takeover flags flip optimistically and are reverted if the backend refuses;
every poll reconciles them against the server, and the server wins.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

from govconnect.core.exceptions import (
    BackendError,
    ConversationNotFoundError,
    ErrorCode,
    ExternalServiceException,
    TakeoverStateConflict,
    ValidationException,
)
from govconnect.core.logging import get_logger, log_async_operation, tenant_context
from govconnect.core.validation import TextSanitizer
from govconnect.domain.services.audit import AuditActionType, AuditOutcome, AuditTrail
from govconnect.domain.services.backend_client import BackendClient
from govconnect.domain.services.message_timeline import ScrollAction, ScrollTracker, merge_messages
from govconnect.domain.services.notifications import Notifier
from govconnect.schemas.conversation import (
    STAGE_ORDER,
    AiStatus,
    Conversation,
    ConversationFilter,
    Message,
    ProcessingStage,
    ProcessingStatus,
    TakeoverInfo,
)
from govconnect.state_machine.optimistic import Optimistic
from govconnect.state_machine.states import AiState, ResponderState

logger = get_logger(__name__)


@dataclass(frozen=True)
class TakeoverReasonTemplate:
    label: str
    reason: str


# "Other" means the admin must write the reason
OTHER_REASON = "Lainnya"

TAKEOVER_REASON_TEMPLATES: tuple[TakeoverReasonTemplate, ...] = (
    TakeoverReasonTemplate("Pertanyaan kompleks", "Pertanyaan kompleks memerlukan penjelasan detail"),
    TakeoverReasonTemplate("Bantuan teknis", "Pengguna membutuhkan bantuan teknis"),
    TakeoverReasonTemplate("Keluhan/Eskalasi", "Keluhan yang perlu eskalasi manual"),
    TakeoverReasonTemplate("Verifikasi data", "Verifikasi data pengguna"),
    TakeoverReasonTemplate("Masalah transaksi", "Transaksi bermasalah memerlukan penanganan khusus"),
    TakeoverReasonTemplate("Request bicara manusia", "Pengguna meminta berbicara dengan manusia"),
    TakeoverReasonTemplate("AI tidak dapat menjawab", "AI tidak dapat menjawab pertanyaan dengan tepat"),
    TakeoverReasonTemplate("Follow-up layanan", "Follow-up dari layanan sebelumnya"),
    TakeoverReasonTemplate("Lainnya (tulis manual)", OTHER_REASON),
)


def _conversation_path(key: str, suffix: str = "") -> str:
    return f"/conversations/{quote(key, safe='')}{suffix}"


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SelectionCell:
    """
    The selected conversation key plus a generation counter.

    A fetch remembers the generation it started under; if the admin picked
    another conversation meanwhile, the response is stale and dropped.
    """

    def __init__(self) -> None:
        self.key: Optional[str] = None
        self.generation = 0

    def select(self, key: Optional[str]) -> int:
        self.key = key
        self.generation += 1
        return self.generation

    def clear(self) -> int:
        return self.select(None)

    def is_current(self, generation: int) -> bool:
        return generation == self.generation


class TakeoverCoordinator:
    """Live chat state for one tenant"""

    def __init__(
        self,
        client: BackendClient,
        tenant_id: str,
        notifier: Optional[Notifier] = None,
        audit: Optional[AuditTrail] = None,
        actor: Optional[str] = None,
        scroll: Optional[ScrollTracker] = None,
    ) -> None:
        self._client = client
        self.tenant_id = tenant_id
        self.notifier = notifier or Notifier()
        self.audit = audit or AuditTrail()
        self.actor = actor

        self.filter = ConversationFilter.ALL
        self.loading = False
        self.selection = SelectionCell()
        self.messages: list[Message] = []
        self.draft = ""
        self.scroll = scroll or ScrollTracker()
        self.last_scroll_action = ScrollAction.NONE
        self.processing_statuses: dict[str, ProcessingStatus] = {}
        # AI replies that arrived for a conversation under takeover
        self.silence_violations: list[Message] = []
        self._silenced_ids: dict[str, set[str]] = {}

        self._known: dict[str, Conversation] = {}
        self._order: list[str] = []
        self._takeover: dict[str, Optimistic[bool]] = {}
        self._takeover_started: dict[str, datetime] = {}

    # ── read-side state ──

    @property
    def conversations(self) -> list[Conversation]:
        """Current list, with takeover flags as the admin should see them"""
        return [self._with_flag(self._known[key]) for key in self._order if key in self._known]

    @property
    def selected_conversation(self) -> Optional[Conversation]:
        key = self.selection.key
        if key is None or key not in self._known:
            return None
        return self._with_flag(self._known[key])

    def _with_flag(self, conversation: Conversation) -> Conversation:
        flag = self._takeover.get(conversation.conversation_key)
        if flag is None or flag.value == conversation.is_takeover:
            return conversation
        return conversation.model_copy(update={"is_takeover": flag.value})

    def _flag(self, key: str) -> Optimistic[bool]:
        if key not in self._takeover:
            known = self._known.get(key)
            self._takeover[key] = Optimistic(bool(known and known.is_takeover))
        return self._takeover[key]

    def takeover_flag(self, key: str) -> Optimistic[bool]:
        return self._flag(key)

    def responder_state(self, key: str) -> ResponderState:
        return ResponderState.HUMAN_OWNED if self._flag(key).value else ResponderState.AI_OWNED

    def ai_state(self, key: str) -> AiState:
        conversation = self._known.get(key)
        status = self.processing_statuses.get(key)
        if conversation is not None and conversation.ai_status == AiStatus.ERROR:
            return AiState.ERROR
        if status is not None:
            if status.stage == ProcessingStage.ERROR:
                return AiState.ERROR
            if status.stage == ProcessingStage.COMPLETED:
                return AiState.COMPLETED
            return AiState.PROCESSING
        if conversation is not None and conversation.ai_status == AiStatus.PROCESSING:
            return AiState.PROCESSING
        return AiState.IDLE

    def filtered_conversations(self, query: str = "") -> list[Conversation]:
        return [c for c in self.conversations if c.matches(query)]

    def _require_key(self, key: Optional[str]) -> str:
        key = key or self.selection.key
        if not key:
            raise ValidationException("No conversation selected", field="conversation_key")
        return key

    # ── server reconciliation ──

    def _observe(self, conversation: Conversation) -> None:
        key = conversation.conversation_key
        if not key:
            return
        self._known[key] = conversation
        flag = self._flag(key).reconcile(conversation.is_takeover)
        self._takeover[key] = flag
        if not flag.pending:
            self._mark_takeover_start(key, flag.value)

    def _mark_takeover_start(self, key: str, is_takeover: bool, started_at: Optional[datetime] = None) -> None:
        if not is_takeover:
            self._takeover_started.pop(key, None)
            self._silenced_ids.pop(key, None)
        elif started_at is not None:
            self._takeover_started[key] = _as_utc(started_at)
        else:
            self._takeover_started.setdefault(key, datetime.now(timezone.utc))

    def _guard_ai_silence(self, key: str, incoming: list[Message]) -> list[Message]:
        """Drop AI replies newer than a confirmed takeover; they should not exist."""
        flag = self._flag(key)
        started = self._takeover_started.get(key)
        if not flag.confirmed_value or started is None:
            return incoming

        held_ids = {m.id for m in self.messages} if key == self.selection.key else set()
        silenced = self._silenced_ids.setdefault(key, set())
        accepted = []
        for message in incoming:
            if (
                message.is_ai_reply
                and message.id not in held_ids
                and _as_utc(message.timestamp) > started
            ):
                if message.id in silenced:
                    continue
                silenced.add(message.id)
                self.silence_violations.append(message)
                logger.error(
                    "AI replied to a conversation under takeover",
                    extra_data={
                        "tenant_id": self.tenant_id,
                        "conversation_key": key,
                        "message_id": message.id,
                        "takeover_started_at": started.isoformat(),
                    },
                )
                continue
            accepted.append(message)
        return accepted

    # ── conversation list ──

    async def list_conversations(
        self,
        filter: Optional[ConversationFilter] = None,
        silent: bool = False,
    ) -> list[Conversation]:
        """
        Load the conversation list.

        A silent refresh (polling) never touches `loading`. A failed load
        keeps the previous list.
        """
        status = ConversationFilter(filter or self.filter)
        if not silent:
            self.loading = True

        with tenant_context(self.tenant_id):
            try:
                data = await self._client.get(
                    "/conversations", tenant_id=self.tenant_id, params={"status": status.value}
                )
            except ExternalServiceException as exc:
                logger.warning(
                    "Conversation list unavailable",
                    extra_data={"filter": status.value, "error": exc.message, "silent": silent},
                )
                if not silent:
                    self.notifier.failure("Failed to load conversations", exc)
                return self.conversations
            finally:
                if not silent:
                    self.loading = False

        if isinstance(data, dict):
            data = data.get("conversations") or []

        order: list[str] = []
        for item in data or []:
            conversation = Conversation.model_validate(item)
            key = conversation.conversation_key
            if not key or key in order:
                continue
            self._observe(conversation)
            order.append(key)
        self._order = order
        return self.conversations

    async def change_filter(self, filter: ConversationFilter) -> list[Conversation]:
        """Switch tab: the selection does not carry over."""
        self.filter = ConversationFilter(filter)
        self.selection.clear()
        self.messages = []
        self.draft = ""
        self.scroll.reset()
        return await self.list_conversations()

    # ── timeline ──

    async def select_conversation(self, key: str) -> list[Message]:
        """Open a conversation: load, mark read, refresh unread counts."""
        if not key:
            raise ValidationException("Conversation key is required", field="conversation_key")

        generation = self.selection.select(key)
        self.messages = []
        self.draft = ""
        self.scroll.reset()

        messages = await self.get_messages(key)
        if not self.selection.is_current(generation):
            return []

        await self._mark_read(key)
        await self.list_conversations(silent=True)
        return messages

    async def get_messages(self, key: str) -> list[Message]:
        """
        Fetch the timeline of `key`.

        For the selected conversation the result is merged into `messages`;
        a response that arrives after the selection changed is dropped.
        """
        selected_at_request = self.selection.key
        generation = self.selection.generation

        with tenant_context(self.tenant_id):
            try:
                data = await self._client.get(_conversation_path(key), tenant_id=self.tenant_id)
            except BackendError as exc:
                if exc.http_status == 404:
                    if self.selection.key == key:
                        self.selection.clear()
                        self.messages = []
                    raise ConversationNotFoundError(key) from exc
                raise

        if isinstance(data, dict):
            if isinstance(data.get("conversation"), dict):
                self._observe(Conversation.model_validate(data["conversation"]))
            raw_messages = data.get("messages") or []
        else:
            raw_messages = data or []
        incoming = [Message.model_validate(item) for item in raw_messages]

        if selected_at_request == key:
            if not self.selection.is_current(generation):
                logger.debug(
                    "Dropping stale timeline response",
                    extra_data={"conversation_key": key, "generation": generation},
                )
                return []
            incoming = self._guard_ai_silence(key, incoming)
            self.messages = merge_messages(self.messages, incoming)
            self.last_scroll_action = self.scroll.on_messages_changed(len(self.messages))
            return self.messages

        return merge_messages([], self._guard_ai_silence(key, incoming))

    async def _mark_read(self, key: str) -> None:
        try:
            await self._client.post(_conversation_path(key, "/read"), tenant_id=self.tenant_id)
        except ExternalServiceException as exc:
            logger.warning(
                "Mark as read failed",
                extra_data={"conversation_key": key, "error": exc.message},
            )

    @log_async_operation("send_message")
    async def send_message(self, text: Optional[str] = None, key: Optional[str] = None) -> list[Message]:
        """
        Send an admin reply (takeover only).

        Uses the draft when `text` is not given. The draft is cleared at once
        and restored if the send fails.
        """
        key = self._require_key(key)
        raw = self.draft if text is None else text
        message = TextSanitizer.sanitize(raw)
        if not message:
            raise ValidationException(
                "Message cannot be empty", field="message", error_code=ErrorCode.EMPTY_MESSAGE
            )
        current = self.responder_state(key)
        if current != ResponderState.HUMAN_OWNED:
            raise TakeoverStateConflict(key, current.value, ResponderState.HUMAN_OWNED.value)

        self.draft = ""
        with tenant_context(self.tenant_id):
            try:
                await self._client.post(
                    _conversation_path(key, "/send"),
                    tenant_id=self.tenant_id,
                    json={"message": message},
                )
            except ExternalServiceException as exc:
                self.draft = raw
                self.notifier.failure("Failed to send message", exc)
                raise

        self.notifier.success("Message sent", "The message was delivered to the user")
        if key == self.selection.key:
            self.last_scroll_action = self.scroll.force_scroll()
        return await self.get_messages(key)

    # ── takeover ──

    @log_async_operation("start_takeover")
    async def start_takeover(self, reason: str, key: Optional[str] = None) -> None:
        """Admin takes the conversation; the AI stops replying."""
        key = self._require_key(key)
        reason = (reason or "").strip()
        if not reason or reason == OTHER_REASON:
            raise ValidationException(
                "Takeover reason is required",
                field="reason",
                error_code=ErrorCode.TAKEOVER_REASON_REQUIRED,
            )
        flag = self._flag(key)
        if flag.value:
            raise TakeoverStateConflict(
                key, ResponderState.HUMAN_OWNED.value, ResponderState.AI_OWNED.value
            )

        self._takeover[key] = flag.propose(True)
        # The AI is no longer working on this conversation
        self.processing_statuses.pop(key, None)

        with tenant_context(self.tenant_id):
            try:
                await self._client.post(
                    _conversation_path(key, "/takeover"),
                    tenant_id=self.tenant_id,
                    json={"reason": reason},
                )
            except ExternalServiceException as exc:
                self._takeover[key] = self._takeover[key].rollback()
                self.audit.record(
                    AuditActionType.TAKEOVER_STARTED,
                    self.tenant_id,
                    AuditOutcome.FAILED,
                    actor=self.actor,
                    target=key,
                    details={"reason": reason, "error": exc.message},
                )
                self.notifier.failure("Failed to take over conversation", exc)
                raise

            self._takeover[key] = self._takeover[key].confirm()
            self._mark_takeover_start(key, True, datetime.now(timezone.utc))
            self.audit.record(
                AuditActionType.TAKEOVER_STARTED,
                self.tenant_id,
                AuditOutcome.SUCCEEDED,
                actor=self.actor,
                target=key,
                details={"reason": reason},
            )
            self.notifier.success(
                "Takeover active",
                "You are now handling this conversation. The AI will not reply.",
            )
        await self.list_conversations(silent=True)

    @log_async_operation("end_takeover")
    async def end_takeover(self, key: Optional[str] = None) -> None:
        """Hand the conversation back to the AI."""
        key = self._require_key(key)
        flag = self._flag(key)
        if not flag.value:
            raise TakeoverStateConflict(
                key, ResponderState.AI_OWNED.value, ResponderState.HUMAN_OWNED.value
            )

        self._takeover[key] = flag.propose(False)
        with tenant_context(self.tenant_id):
            try:
                await self._client.delete(_conversation_path(key, "/takeover"), tenant_id=self.tenant_id)
            except ExternalServiceException as exc:
                self._takeover[key] = self._takeover[key].rollback()
                self.audit.record(
                    AuditActionType.TAKEOVER_ENDED,
                    self.tenant_id,
                    AuditOutcome.FAILED,
                    actor=self.actor,
                    target=key,
                    details={"error": exc.message},
                )
                self.notifier.failure("Failed to end takeover", exc)
                raise

            self._takeover[key] = self._takeover[key].confirm()
            self._mark_takeover_start(key, False)
            self.audit.record(
                AuditActionType.TAKEOVER_ENDED,
                self.tenant_id,
                AuditOutcome.SUCCEEDED,
                actor=self.actor,
                target=key,
            )
            self.notifier.success("Takeover ended", "The AI will handle this conversation again.")
        await self.list_conversations(silent=True)

    async def get_takeover_status(self, key: Optional[str] = None) -> TakeoverInfo:
        key = self._require_key(key)
        with tenant_context(self.tenant_id):
            data = await self._client.get(_conversation_path(key, "/takeover"), tenant_id=self.tenant_id)

        info = TakeoverInfo.model_validate({"conversation_key": key, **(data or {})})
        flag = self._flag(key).reconcile(info.is_takeover)
        self._takeover[key] = flag
        if not flag.pending:
            self._mark_takeover_start(key, info.is_takeover, info.started_at)
        return info

    async def list_active_takeovers(self) -> list[TakeoverInfo]:
        with tenant_context(self.tenant_id):
            data = await self._client.get("/takeovers", tenant_id=self.tenant_id)
        if isinstance(data, dict):
            data = data.get("takeovers") or []
        return [TakeoverInfo.model_validate({"is_takeover": True, **item}) for item in data or []]

    # ── AI processing ──

    @log_async_operation("retry_ai_processing")
    async def retry_ai_processing(self, key: Optional[str] = None) -> None:
        """Re-run the AI for a conversation whose last turn failed."""
        key = self._require_key(key)
        conversation = self._known.get(key)
        if conversation is None:
            raise ConversationNotFoundError(key)
        if conversation.ai_status != AiStatus.ERROR:
            raise TakeoverStateConflict(key, self.ai_state(key).value, AiState.ERROR.value)
        if self.responder_state(key) == ResponderState.HUMAN_OWNED:
            raise TakeoverStateConflict(
                key, ResponderState.HUMAN_OWNED.value, ResponderState.AI_OWNED.value
            )

        payload: dict[str, Any] = {}
        if conversation.pending_message_id:
            payload["messageId"] = conversation.pending_message_id

        with tenant_context(self.tenant_id):
            try:
                await self._client.post(
                    _conversation_path(key, "/retry"), tenant_id=self.tenant_id, json=payload
                )
            except ExternalServiceException as exc:
                self.notifier.failure("Retry failed", exc)
                raise

        self._known[key] = conversation.model_copy(
            update={"ai_status": AiStatus.PROCESSING, "ai_error_message": None}
        )
        self.notifier.success("Retrying", "The AI is processing the message again")
        await self.list_conversations(silent=True)

    async def get_processing_statuses(self) -> dict[str, ProcessingStatus]:
        """
        Bulk fetch AI progress, keyed by conversation key.

        Conversations under takeover get no status. A stage never moves
        backwards within one AI turn.
        """
        with tenant_context(self.tenant_id):
            try:
                data = await self._client.get("/processing-status", tenant_id=self.tenant_id)
            except ExternalServiceException as exc:
                logger.warning("Processing statuses unavailable", extra_data={"error": exc.message})
                return dict(self.processing_statuses)

        if isinstance(data, dict):
            raw = data.get("statuses") or []
        else:
            raw = data or []
        if isinstance(raw, dict):
            raw = [{"userId": key, **value} for key, value in raw.items()]

        statuses: dict[str, ProcessingStatus] = {}
        for item in raw:
            status = ProcessingStatus.model_validate(item)
            key = status.conversation_key
            if self._flag(key).value:
                continue
            previous = self.processing_statuses.get(key)
            if (
                previous is not None
                and not previous.is_terminal
                and STAGE_ORDER[status.stage] < STAGE_ORDER[previous.stage]
            ):
                status = previous
            statuses[key] = status

        self.processing_statuses = statuses
        return dict(statuses)

    # ── history ──

    @log_async_operation("delete_conversation_history")
    async def delete_conversation_history(self, key: Optional[str] = None) -> None:
        """Delete every message of the conversation. Irreversible."""
        key = self._require_key(key)
        with tenant_context(self.tenant_id):
            try:
                await self._client.delete(_conversation_path(key), tenant_id=self.tenant_id)
            except BackendError as exc:
                if exc.http_status != 404:
                    self.notifier.failure("Failed to delete conversation", exc)
                    raise
            except ExternalServiceException as exc:
                self.notifier.failure("Failed to delete conversation", exc)
                raise

        if self.selection.key == key:
            self.selection.clear()
            self.messages = []
            self.draft = ""
            self.scroll.reset()
        self._known.pop(key, None)
        self._takeover.pop(key, None)
        self._takeover_started.pop(key, None)
        self._silenced_ids.pop(key, None)
        self.processing_statuses.pop(key, None)
        self._order = [k for k in self._order if k != key]
        self.notifier.success("Conversation deleted")
