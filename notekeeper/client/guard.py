from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from notekeeper.client.models import ClientUser
from notekeeper.client.state import AuthState
from notekeeper.logging import get_logger

logger = get_logger(__name__)


class RouteGroup(str, Enum):
    AUTH = "auth"
    PROTECTED = "protected"


class GuardState(str, Enum):
    UNINITIALIZED = "uninitialized"
    REDIRECT_TO_SIGN_IN = "redirect_to_sign_in"
    REDIRECT_TO_HOME = "redirect_to_home"
    STABLE = "stable"


def evaluate_route(
    user: Optional[ClientUser],
    route_group: Optional[RouteGroup],
    navigation_ready: bool,
) -> GuardState:
    """Decide where the current location should go for the given user."""
    if not navigation_ready or route_group is None:
        return GuardState.UNINITIALIZED
    if user is None and route_group is RouteGroup.PROTECTED:
        return GuardState.REDIRECT_TO_SIGN_IN
    if user is not None and route_group is RouteGroup.AUTH:
        return GuardState.REDIRECT_TO_HOME
    return GuardState.STABLE


class ProtectedRouteGuard:
    """Re-evaluates ``evaluate_route`` on user and route changes and redirects.

    ``navigate`` receives REDIRECT_TO_SIGN_IN or REDIRECT_TO_HOME; it is never
    called before ``set_navigation_ready`` has been called.
    """

    def __init__(
        self,
        state: AuthState,
        navigate: Callable[[GuardState], None],
        *,
        route_group: Optional[RouteGroup] = None,
    ):
        self.state = state
        self._navigate = navigate
        self.route_group = route_group
        self.navigation_ready = False
        self.last_decision = GuardState.UNINITIALIZED
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> GuardState:
        if self._unsubscribe is None:
            self._unsubscribe = self.state.subscribe(
                lambda user, _previous: self.evaluate(),
                selector=lambda snapshot: snapshot.user,
            )
        return self.evaluate()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def set_navigation_ready(self, ready: bool = True) -> GuardState:
        self.navigation_ready = ready
        return self.evaluate()

    def set_route_group(self, route_group: RouteGroup) -> GuardState:
        self.route_group = route_group
        return self.evaluate()

    def evaluate(self) -> GuardState:
        decision = evaluate_route(self.state.user, self.route_group, self.navigation_ready)
        self.last_decision = decision
        if decision in (GuardState.REDIRECT_TO_SIGN_IN, GuardState.REDIRECT_TO_HOME):
            logger.debug("route_guard_redirect", decision=decision.value, route_group=self.route_group)
            self._navigate(decision)
        return decision
