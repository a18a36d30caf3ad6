"""Session services package - authentication state and in-flight coalescing.

Hey future me - everything that decides "who is logged in" lives here:
- session_state_machine.py: SessionStateMachine (the ONLY writer of token store + session)
- single_flight.py: SingleFlight (shared-task coalescing, also used by MediaCache)

New code should import from this package:
    from pandorabox.application.services.sessions import SessionStateMachine

Architecture:
    init()/login() -> IAuthBackend (HTTP) -> ITokenStore (DB) -> RealtimeChannel.connect()
"""

from pandorabox.application.services.sessions.session_state_machine import (
    INIT_ERROR_MESSAGE,
    LOGIN_ERROR_MESSAGE,
    ChannelFactory,
    SessionStateMachine,
)
from pandorabox.application.services.sessions.single_flight import SingleFlight

__all__ = [
    "INIT_ERROR_MESSAGE",
    "LOGIN_ERROR_MESSAGE",
    "ChannelFactory",
    "SessionStateMachine",
    "SingleFlight",
]
