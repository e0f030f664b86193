from __future__ import annotations

import operator
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable, Deque, List, Optional, Union

from notekeeper.client.models import ClientUser
from notekeeper.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthSnapshot:
    user: Optional[ClientUser] = None
    is_sign_up: bool = False


UserUpdate = Union[Optional[ClientUser], Callable[[Optional[ClientUser]], Optional[ClientUser]]]
Listener = Callable[[Any, Any], None]


class _Subscription:
    __slots__ = ("listener", "selector", "equality", "last", "active")

    def __init__(self, listener: Listener, selector, equality, initial: Any):
        self.listener = listener
        self.selector = selector
        self.equality = equality
        self.last = initial
        self.active = True

    def notify(self, snapshot: AuthSnapshot) -> None:
        selected = self.selector(snapshot)
        if self.equality(self.last, selected):
            return
        previous, self.last = self.last, selected
        self.listener(selected, previous)


class AuthState:
    """Observable holder for the signed-in user.

    Writes are serialized: each update is applied and delivered to every
    subscriber before the next one is applied. An update issued from inside a
    listener is queued and applied once the current round is finished, so all
    subscribers see updates in the order they were set.

    Do not call ``set_user(None)`` to sign out; use ``AuthController.sign_out``
    so secure storage is cleared too.
    """

    def __init__(self) -> None:
        self._snapshot = AuthSnapshot()
        self._lock = threading.RLock()
        self._subscriptions: List[_Subscription] = []
        self._pending: Deque[Callable[[AuthSnapshot], AuthSnapshot]] = deque()
        self._notifying = False

    def get(self) -> AuthSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def user(self) -> Optional[ClientUser]:
        return self.get().user

    def set_user(self, value: UserUpdate, is_sign_up: Optional[bool] = None) -> None:
        """Replace the user, or derive it from the previous one when ``value`` is callable.

        A callable is evaluated when the update is applied, against the user
        left by every update queued before it.
        """

        def _update(prev: AuthSnapshot) -> AuthSnapshot:
            user = value(prev.user) if callable(value) else value
            if is_sign_up is None:
                return replace(prev, user=user)
            return replace(prev, user=user, is_sign_up=is_sign_up)

        self._enqueue(_update)

    def set_is_sign_up(self, is_sign_up: bool) -> None:
        self._enqueue(lambda prev: replace(prev, is_sign_up=is_sign_up))

    def subscribe(
        self,
        listener: Listener,
        selector: Optional[Callable[[AuthSnapshot], Any]] = None,
        equality: Optional[Callable[[Any, Any], bool]] = None,
    ) -> Callable[[], None]:
        """Call ``listener(selected, previous)`` whenever the selected slice changes.

        Returns a function that removes the subscription.
        """
        selector = selector or (lambda snapshot: snapshot)
        equality = equality or operator.eq
        with self._lock:
            subscription = _Subscription(listener, selector, equality, selector(self._snapshot))
            self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            with self._lock:
                subscription.active = False
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return _unsubscribe

    def _enqueue(self, update: Callable[[AuthSnapshot], AuthSnapshot]) -> None:
        """Apply ``update`` and every update queued while listeners run, in order.

        An update that raises is skipped without touching the snapshot; the
        rest of the queue still runs. The caller's own failure is re-raised
        once the queue is drained.
        """
        with self._lock:
            self._pending.append(update)
            if self._notifying:
                return
            self._notifying = True
            own_error: Optional[Exception] = None
            try:
                while self._pending:
                    current = self._pending.popleft()
                    try:
                        self._snapshot = current(self._snapshot)
                    except Exception as exc:
                        if current is update:
                            own_error = exc
                        else:
                            logger.error(
                                "auth_state_update_failed",
                                error=str(exc),
                                error_type=type(exc).__name__,
                            )
                        continue
                    snapshot = self._snapshot
                    for subscription in list(self._subscriptions):
                        if subscription.active:
                            self._deliver(subscription, snapshot)
            finally:
                self._notifying = False
        if own_error is not None:
            raise own_error

    @staticmethod
    def _deliver(subscription: _Subscription, snapshot: AuthSnapshot) -> None:
        try:
            subscription.notify(snapshot)
        except Exception as exc:
            logger.error(
                "auth_state_listener_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
