import logging
from typing import Optional

from ipgate.core import (
    AUTH_DISABLED,
    AUTHENTICATED,
    BANNED,
    DYNAMIC_ALLOW,
    IN_DENY_LIST,
    NO_MATCH,
    PRIVATE_BLOCKED,
    STATIC_ALLOW,
    Address,
    Classification,
    Credential,
    Decision,
    Label,
    Policy,
    first_match,
    is_private_blocked,
    match_credentials,
)
from ipgate.state import AccessState

logger = logging.getLogger(__name__)

_LABELS = {
    PRIVATE_BLOCKED: Label.PRIVATE,
    IN_DENY_LIST: Label.DENY,
    STATIC_ALLOW: Label.STATIC_ALLOW,
    DYNAMIC_ALLOW: Label.DYNAMIC_ALLOW,
}


class AccessEngine:
    """
    Decides whether a client address may reach the backend.

    Rules are evaluated in order and the first applicable one wins:
    private range (when enabled), deny ranges, fixed allow ranges, the
    dynamic allow set, then Basic-auth credentials.
    """

    def __init__(self, policy: Policy, state: Optional[AccessState] = None) -> None:
        self.policy = policy
        self.state = state if state is not None else AccessState()

    def decide(self, addr: Address, credentials: Optional[Credential] = None) -> Decision:
        decision = self._rules(addr)
        if decision is not None:
            logger.debug("%s: %s", decision.reason, addr)
            return decision

        logger.debug("not in allow list: %s", addr)
        return self.check_credentials(addr, credentials)

    def check_credentials(self, addr: Address, credentials: Optional[Credential]) -> Decision:
        # The ban check, the comparison and the increment are separate
        # critical sections. Concurrent failures from one address may each
        # pass the ban check and push the count one past the threshold.
        attempts = self.state.attempts(addr)
        if attempts >= self.policy.max_attempts:
            return Decision.deny(BANNED)

        if not self.policy.credentials:
            return Decision.deny(AUTH_DISABLED)

        user = match_credentials(credentials, self.policy.credentials)
        if user is not None:
            self.state.allow_dynamic(addr)
            logger.info("basic auth succeeded, address added dynamically: addr=%s user=%s", addr, user.name)
            return Decision.allow(AUTHENTICATED)

        count = self.state.record_failure(addr)
        logger.warning(
            "basic auth failed: user=%s addr=%s attempts=%d",
            credentials.name if credentials else "-",
            addr,
            count,
        )
        if count == self.policy.max_attempts:
            logger.warning("address banned after %d failed attempts: %s", count, addr)
        return Decision.deny(NO_MATCH)

    def classify(self, addr: Address) -> Classification:
        attempts = self.state.attempts(addr)
        decision = self._rules(addr)
        if decision is not None:
            return Classification(_LABELS[decision.reason], decision.matched, attempts)
        if attempts >= self.policy.max_attempts:
            return Classification(Label.BANNED, None, attempts)
        return Classification(Label.UNCLASSIFIED, None, attempts)

    def _rules(self, addr: Address) -> Optional[Decision]:
        policy = self.policy
        if policy.deny_private and is_private_blocked(addr):
            return Decision.deny(PRIVATE_BLOCKED)

        net = first_match(addr, policy.deny_ranges)
        if net is not None:
            return Decision.deny(IN_DENY_LIST, str(net))

        net = first_match(addr, policy.allow_ranges)
        if net is not None:
            return Decision.allow(STATIC_ALLOW, str(net))

        if self.state.is_dynamic(addr):
            return Decision.allow(DYNAMIC_ALLOW)
        return None
