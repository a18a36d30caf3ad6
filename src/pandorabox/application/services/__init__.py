"""Application services - session lifecycle and in-flight coalescing."""

from pandorabox.application.services.sessions import SessionStateMachine, SingleFlight

__all__ = [
    "SessionStateMachine",
    "SingleFlight",
]
