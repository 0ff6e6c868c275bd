"""
State Machine Module for Channel Sessions and Takeover
"""
from govconnect.state_machine.states import (
    AiState,
    ChannelSessionState,
    ResponderState,
    is_valid_transition,
)
from govconnect.state_machine.optimistic import Optimistic

__all__ = ["AiState", "ChannelSessionState", "ResponderState", "Optimistic", "is_valid_transition"]
