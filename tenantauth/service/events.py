from __future__ import annotations

from typing import Any, Callable, Dict, List

from tenantauth.logging import get_logger

logger = get_logger(__name__)

TOKEN_CREATED = "auth.token.created"
TOKEN_REFRESHED = "auth.token.refreshed"
LOGIN_SUCCESS = "auth.login.success"
LOGIN_FAILED = "auth.login.failed"
ACCOUNT_LOCKED = "auth.account.locked"
USER_LOGOUT = "auth.user.logout"
PASSWORD_RESET_REQUESTED = "auth.password.reset.requested"
PASSWORD_RESET_COMPLETED = "auth.password.reset.completed"
PASSWORD_CHANGED = "auth.password.changed"
MFA_ENABLED = "auth.mfa.enabled"
MFA_DISABLED = "auth.mfa.disabled"
MFA_RECOVERY_USED = "auth.mfa.recovery.used"

Subscriber = Callable[[str, Dict[str, Any]], None]


class DomainEvents:
    """In-process fan-out of auth events to logging and registered subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def emit(self, name: str, **payload: Any) -> None:
        logger.info("domain_event", event_name=name, **payload)
        for subscriber in list(self._subscribers):
            try:
                subscriber(name, dict(payload))
            except Exception as exc:
                # Publishing is fire-and-forget for the auth flow
                logger.warning(
                    "domain_event_subscriber_failed", event_name=name, error=str(exc)
                )
