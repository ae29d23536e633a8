# State machine module - transition graph and state manager
from .machine import ClaimStateMachine
from .manager import StateManager

__all__ = ["ClaimStateMachine", "StateManager"]
