"""Session state machine for managing state transitions."""

from camrelay.schemas import SessionRole, SessionState


class SessionStateMachine:
    """State machine for relay session transitions, one table per role.

    Viewer flow with triggers:
    - IDLE -> CONNECTING (watch() called)
    - CONNECTING -> AWAITING_OFFER (channel open, request_stream sent)
    - AWAITING_OFFER -> NEGOTIATING (stream_offer applied, stream_answer sent)
    - NEGOTIATING -> ACTIVE (first inbound track surfaced by the peer connection)
    - CONNECTING | AWAITING_OFFER | NEGOTIATING | ACTIVE -> AWAITING_OFFER
      (channel restored after a drop, request_stream re-sent on a fresh peer link)
    - any live state -> ENDED (stream_ended received or stop())
    - any live state -> ERRORED (timeout, error message, ICE failure) -> ENDED

    Source flow with triggers:
    - IDLE -> CONNECTING (serve() called)
    - CONNECTING -> AWAITING_REQUEST (channel open)
    - AWAITING_REQUEST -> NEGOTIATING (request_stream accepted, stream_offer sent)
    - NEGOTIATING -> ACTIVE (stream_answer applied)
    - NEGOTIATING | ACTIVE -> NEGOTIATING (viewer re-requested; peer link replaced)
    - NEGOTIATING | ACTIVE -> AWAITING_REQUEST (peer link failed, capture refused)
    - CONNECTING | AWAITING_REQUEST | NEGOTIATING | ACTIVE -> AWAITING_REQUEST
      (channel restored after a drop; any peer link is discarded)
    - any live state -> ENDED (local capture ended, stop())
    - any live state -> ERRORED -> ENDED

    ENDED is the only terminal state; ERRORED is a one-way hop into it.
    """

    TRANSITIONS: dict[SessionRole, dict[SessionState, set[SessionState]]] = {
        SessionRole.VIEWER: {
            SessionState.IDLE: {
                SessionState.CONNECTING,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.CONNECTING: {
                SessionState.AWAITING_OFFER,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.AWAITING_OFFER: {
                SessionState.NEGOTIATING,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.NEGOTIATING: {
                SessionState.ACTIVE,
                SessionState.AWAITING_OFFER,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.ACTIVE: {
                SessionState.AWAITING_OFFER,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.ERRORED: {SessionState.ENDED},
            SessionState.ENDED: set(),
        },
        SessionRole.SOURCE: {
            SessionState.IDLE: {
                SessionState.CONNECTING,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.CONNECTING: {
                SessionState.AWAITING_REQUEST,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.AWAITING_REQUEST: {
                SessionState.NEGOTIATING,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.NEGOTIATING: {
                SessionState.ACTIVE,
                SessionState.AWAITING_REQUEST,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.ACTIVE: {
                SessionState.NEGOTIATING,
                SessionState.AWAITING_REQUEST,
                SessionState.ENDED,
                SessionState.ERRORED,
            },
            SessionState.ERRORED: {SessionState.ENDED},
            SessionState.ENDED: set(),
        },
    }

    TERMINAL_STATES: set[SessionState] = {SessionState.ENDED}

    # Protocol events are ignored once a session is in one of these
    FAILURE_STATES: set[SessionState] = {SessionState.ERRORED, SessionState.ENDED}

    @classmethod
    def can_transition(cls, role: SessionRole, current: SessionState, new: SessionState) -> bool:
        """Check if state transition is valid for the given role.

        Args:
            role: Which end of the session is transitioning
            current: Current session state
            new: Target state to transition to

        Returns:
            True if transition is valid, False otherwise
        """
        return new in cls.TRANSITIONS[role].get(current, set())

    @classmethod
    def is_terminal(cls, state: SessionState) -> bool:
        """Check if a state is terminal (no further transitions allowed)."""
        return state in cls.TERMINAL_STATES

    @classmethod
    def is_finishing(cls, state: SessionState) -> bool:
        """ERRORED or ENDED: the session accepts no further protocol events."""
        return state in cls.FAILURE_STATES

    @classmethod
    def get_valid_transitions(cls, role: SessionRole, state: SessionState) -> set[SessionState]:
        """Get all valid transitions from a given state."""
        return cls.TRANSITIONS[role].get(state, set())

    @classmethod
    def get_valid_sources(cls, role: SessionRole, target: SessionState) -> set[SessionState]:
        """Get all states that can transition to the target state."""
        return {
            state for state, targets in cls.TRANSITIONS[role].items() if target in targets
        }
