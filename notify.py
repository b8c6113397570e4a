'''
Process-wide publish/subscribe and the observable plan state that the store manager writes to.

Both objects are written to from the store manager's control thread and read by the host (UI,
HTTP layer). Callbacks are invoked synchronously on the publishing thread, a subscriber that wants
to do heavy work should hand it off to its own thread.
'''

import dataclasses
import enum
import logging
import threading
import traceback
import typing

from plans import SubscriptionPlan

log = logging.Logger('NOTIFY')

TOPIC_SUBSCRIPTION_UPDATED: str = 'SubscriptionUpdated'

NotificationCallback: typing.TypeAlias = typing.Callable[[str, dict[str, typing.Any]], None]
PlanStateCallback:    typing.TypeAlias = typing.Callable[['PlanState'], None]

@dataclasses.dataclass
class Subscriber:
    token:    int                  = 0
    topic:    str                  = ''
    callback: NotificationCallback | None = None

class NotificationCenter:
    '''
    Fire-and-forget notifications keyed by topic. Publishing never fails on behalf of a
    subscriber, an exception raised by a callback is logged and the remaining subscribers still
    receive the notification.
    '''
    def __init__(self):
        self._lock:        threading.Lock   = threading.Lock()
        self._next_token:  int              = 1
        self._subscribers: list[Subscriber] = []

    def subscribe(self, topic: str, callback: NotificationCallback) -> int:
        with self._lock:
            result            = self._next_token
            self._next_token += 1
            self._subscribers.append(Subscriber(token=result, topic=topic, callback=callback))
        return result

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            count             = len(self._subscribers)
            self._subscribers = [it for it in self._subscribers if it.token != token]
            result            = len(self._subscribers) != count
        return result

    def publish(self, topic: str, payload: dict[str, typing.Any]):
        with self._lock:
            targets = [it for it in self._subscribers if it.topic == topic]

        for it in targets:
            assert it.callback
            try:
                it.callback(topic, payload)
            except Exception:
                log.error(f'Subscriber {it.token} for "{topic}" raised whilst handling a notification: {traceback.format_exc()}')

class OfferingsState(enum.Enum):
    Idle    = 0
    Loading = 1
    Error   = 2

class PlanState:
    '''
    Observable state owned by a StoreManager. Only the store manager's control thread writes to
    it, everything else reads the properties or subscribes to be told when they change.
    '''
    def __init__(self):
        self._lock:            threading.Lock                = threading.Lock()
        self._next_token:      int                           = 1
        self._observers:       dict[int, PlanStateCallback]  = {}
        self._current_plan:    SubscriptionPlan              = SubscriptionPlan.Nil
        self._loading_count:   int                           = 0
        self._offerings:       typing.Any                    = None
        self._offerings_state: OfferingsState                = OfferingsState.Idle

    @property
    def current_plan(self) -> SubscriptionPlan:
        return self._current_plan

    @property
    def is_loading(self) -> bool:
        return self._loading_count > 0

    @property
    def offerings(self) -> typing.Any:
        return self._offerings

    @property
    def offerings_state(self) -> OfferingsState:
        return self._offerings_state

    def subscribe(self, callback: PlanStateCallback) -> int:
        with self._lock:
            result                  = self._next_token
            self._next_token       += 1
            self._observers[result] = callback
        return result

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            result = self._observers.pop(token, None) is not None
        return result

    def set_current_plan(self, plan: SubscriptionPlan):
        changed            = self._current_plan != plan
        self._current_plan = plan
        if changed:
            self._notify()

    def begin_loading(self):
        self._loading_count += 1
        if self._loading_count == 1:
            self._notify()

    def end_loading(self):
        assert self._loading_count > 0, 'Unbalanced end_loading, every begin_loading must be paired'
        self._loading_count -= 1
        if self._loading_count == 0:
            self._notify()

    def set_offerings(self, offerings: typing.Any, state: OfferingsState):
        self._offerings       = offerings if offerings is not None else self._offerings
        self._offerings_state = state
        self._notify()

    def _notify(self):
        with self._lock:
            observers = list(self._observers.items())
        for token, callback in observers:
            try:
                callback(self)
            except Exception:
                log.error(f'Plan state observer {token} raised: {traceback.format_exc()}')
