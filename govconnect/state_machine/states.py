"""
State Definitions for Channel Sessions and Conversation Responders
"""
from enum import Enum


class ChannelSessionState(str, Enum):
    """Lifecycle of one tenant's WhatsApp session"""

    # No verdict yet (never fetched, or only transport failures so far)
    UNKNOWN = "CHANNEL.UNKNOWN"

    NO_SESSION = "CHANNEL.NO_SESSION"
    SESSION_CREATED = "CHANNEL.SESSION_CREATED"

    # QR dialog open, waiting for the phone to scan
    PAIRING = "CHANNEL.PAIRING"
    LOGGED_IN = "CHANNEL.LOGGED_IN"

    # Logged out by the admin; the session record is kept
    DISCONNECTED = "CHANNEL.DISCONNECTED"


class ResponderState(str, Enum):
    """Who answers the end user"""
    AI_OWNED = "RESPONDER.AI_OWNED"
    HUMAN_OWNED = "RESPONDER.HUMAN_OWNED"


class AiState(str, Enum):
    """AI processing of the latest inbound message"""
    IDLE = "AI.IDLE"
    PROCESSING = "AI.PROCESSING"
    COMPLETED = "AI.COMPLETED"
    ERROR = "AI.ERROR"


# State transitions mapping
CHANNEL_SESSION_TRANSITIONS = {
    ChannelSessionState.UNKNOWN: [
        ChannelSessionState.NO_SESSION,
        ChannelSessionState.SESSION_CREATED,
        ChannelSessionState.PAIRING,
        ChannelSessionState.LOGGED_IN,
        ChannelSessionState.DISCONNECTED,
    ],
    ChannelSessionState.NO_SESSION: [ChannelSessionState.SESSION_CREATED],
    ChannelSessionState.SESSION_CREATED: [
        ChannelSessionState.PAIRING,
        ChannelSessionState.LOGGED_IN,
        ChannelSessionState.NO_SESSION,
    ],
    ChannelSessionState.PAIRING: [
        ChannelSessionState.LOGGED_IN,
        ChannelSessionState.SESSION_CREATED,  # QR expired / dialog closed
        ChannelSessionState.NO_SESSION,
    ],
    ChannelSessionState.LOGGED_IN: [
        ChannelSessionState.DISCONNECTED,
        ChannelSessionState.PAIRING,  # phone unlinked the device
        ChannelSessionState.NO_SESSION,
    ],
    ChannelSessionState.DISCONNECTED: [
        ChannelSessionState.PAIRING,
        ChannelSessionState.LOGGED_IN,
        ChannelSessionState.NO_SESSION,
    ],
}

RESPONDER_TRANSITIONS = {
    ResponderState.AI_OWNED: [ResponderState.HUMAN_OWNED],
    ResponderState.HUMAN_OWNED: [ResponderState.AI_OWNED],
}

AI_TRANSITIONS = {
    AiState.IDLE: [AiState.PROCESSING],
    AiState.PROCESSING: [AiState.COMPLETED, AiState.ERROR],
    AiState.COMPLETED: [AiState.PROCESSING, AiState.IDLE],
    # retry
    AiState.ERROR: [AiState.PROCESSING, AiState.IDLE],
}

_STATE_MAPS = [
    (ChannelSessionState, CHANNEL_SESSION_TRANSITIONS),
    (ResponderState, RESPONDER_TRANSITIONS),
    (AiState, AI_TRANSITIONS),
]


def is_valid_transition(current: str, target: str) -> bool:
    """Check if transition from current to target state is valid"""
    if current == target:
        return True

    for state_enum, transitions in _STATE_MAPS:
        try:
            current_state = state_enum(current)
            target_state = state_enum(target)
        except ValueError:
            continue
        if current_state in transitions:
            return target_state in transitions[current_state]

    return False
