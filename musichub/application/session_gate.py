from __future__ import annotations

import logging

from musichub.crosscutting.logging import log_with_fields
from musichub.domain.entities import Session, SessionEvent, SessionState
from musichub.domain.errors import AuthRequiredError, VerificationRequiredError

from .store import Observable


logger = logging.getLogger(__name__)


class SessionGate(Observable[Session]):
    """Tracks authentication and verification from identity provider events.

    It is the only authority on whether library mutations are permitted. State
    changes arrive exclusively through handle_event(); nothing is polled.
    """

    def __init__(self) -> None:
        super().__init__()
        self._session = Session()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    def handle_event(self, event: SessionEvent) -> Session:
        """Apply a session-change notification and notify subscribers.

        Subscribers are notified on every event, including repeats of the same
        state, so a verified session re-syncs on refresh events.
        """
        user = event.user
        if user is None:
            session = Session()
        elif not user.email_verified:
            session = Session(SessionState.AUTHENTICATED_UNVERIFIED, user.user_id, user)
        else:
            session = Session(SessionState.AUTHENTICATED_VERIFIED, user.user_id, user)

        previous = self._session
        self._session = session
        if previous.state is not session.state or previous.user_id != session.user_id:
            log_with_fields(logger, 'INFO', 'Session state changed', {
                'event': event.event,
                'from': previous.state.value,
                'to': session.state.value,
            })
        self._notify(session)
        return session

    def can_mutate_library(self) -> bool:
        return self._session.state is SessionState.AUTHENTICATED_VERIFIED

    def require_library_access(self) -> str:
        """Return the verified user id or raise the matching gate error."""
        state = self._session.state
        if state is SessionState.ANONYMOUS:
            raise AuthRequiredError("Sign in to manage your library")
        if state is SessionState.AUTHENTICATED_UNVERIFIED:
            raise VerificationRequiredError("Please verify your email to manage your library")
        return self._session.user_id
