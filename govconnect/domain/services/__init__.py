"""
Domain Services
"""
from govconnect.domain.services.backend_client import BackendClient
from govconnect.domain.services.channel_session_service import ChannelSessionService
from govconnect.domain.services.pairing import PairingSession, SessionStatusWatcher
from govconnect.domain.services.takeover_coordinator import TakeoverCoordinator
from govconnect.domain.services.conversation_sync import ConversationPoller
from govconnect.domain.services.notifications import Notifier
from govconnect.domain.services.audit import AuditTrail

__all__ = [
    "BackendClient",
    "ChannelSessionService",
    "PairingSession",
    "SessionStatusWatcher",
    "TakeoverCoordinator",
    "ConversationPoller",
    "Notifier",
    "AuditTrail",
]
