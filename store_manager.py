'''
The store manager reconciles the user's in-app purchase entitlements with their profile. It
fetches offerings and customer info from the commerce backend, resolves the active entitlements
into a subscription plan, writes the plan and its room limit to the user's profile and broadcasts
the change to the rest of the app.

All work is executed on a single control thread owned by the manager. Public operations enqueue a
job and immediately return a future so the caller (UI thread, HTTP handler) is never blocked, and
since jobs run one at a time in submission order, overlapping purchases, restores and
reconciliations can't interleave their writes to the plan state or the profile.

Errors from the collaborators never escape the control thread. They are logged and, for purchases
and restores, handed back to the caller as a `StoreOutcome`.
'''

import collections.abc
import concurrent.futures
import dataclasses
import enum
import logging
import queue
import threading
import traceback
import typing
import webbrowser

import base
import plans
from base import ErrorSink
from notify import NotificationCenter, PlanState, OfferingsState, TOPIC_SUBSCRIPTION_UPDATED
from platform_revenuecat import CommerceBackend, CustomerInfo, Offerings, Package, PurchaseResult
from profiles import ProfileStore

log = logging.Logger('STORE')

APPLE_MANAGE_SUBSCRIPTIONS_URL: str = 'https://apps.apple.com/account/subscriptions'

T = typing.TypeVar('T')

class ReconcileStatus(enum.Enum):
    Success                 = 0
    NoAuthenticatedIdentity = 1 # Plan updated in memory only, nobody is signed in
    PersistenceNotFound     = 2 # Zero or multiple profiles match the identity
    PersistenceWriteFailed  = 3 # Profile write failed, change was not published

@dataclasses.dataclass
class StoreOutcome:
    success:   bool       = False
    msg:       str | None = None
    cancelled: bool       = False

class IdentityProvider:
    def current_identity(self) -> str | None:
        raise NotImplementedError

class StaticIdentityProvider(IdentityProvider):
    '''Identity set explicitly by the host when the user signs in or out'''
    def __init__(self, identity: str | None = None):
        self._identity: str | None = identity

    def current_identity(self) -> str | None:
        return self._identity

    def sign_in(self, identity: str):
        self._identity = identity

    def sign_out(self):
        self._identity = None

class SystemLauncher:
    def open(self, url: str):
        raise NotImplementedError

class WebBrowserLauncher(SystemLauncher):
    def open(self, url: str):
        if not webbrowser.open(url):
            log.warning(f'No browser was available to open {url}')

class ControlQueue:
    '''
    A single thread draining a FIFO of jobs. Each job's result (or exception) is delivered through
    the future returned on submission.
    '''
    def __init__(self, name: str = 'store-control'):
        self._queue:  queue.Queue[tuple[concurrent.futures.Future[typing.Any], typing.Callable[[], typing.Any]] | None] = queue.Queue()
        self._closed: bool             = False
        self._lock:   threading.Lock   = threading.Lock()
        self._thread: threading.Thread = threading.Thread(target=self._worker, name=name, daemon=True)
        self._thread.start()

    def submit(self, fn: typing.Callable[[], T]) -> concurrent.futures.Future[T]:
        result: concurrent.futures.Future[T] = concurrent.futures.Future()
        with self._lock:
            if self._closed:
                raise RuntimeError('Control queue has been closed, no more jobs can be submitted')
            self._queue.put((result, fn))
        return result

    def is_control_thread(self) -> bool:
        result = threading.current_thread() is self._thread
        return result

    def close(self, timeout: float | None = None):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(None)
        if not self.is_control_thread():
            self._thread.join(timeout=timeout)

    def _worker(self):
        while True:
            item = self._queue.get()
            if item is None:
                break

            future, fn = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn())
            except BaseException as e:
                future.set_exception(e)

class StoreManager:
    commerce:      CommerceBackend
    profiles:      ProfileStore
    identity:      IdentityProvider
    notifications: NotificationCenter
    launcher:      SystemLauncher
    state:         PlanState

    def __init__(self,
                 commerce:      CommerceBackend,
                 profiles:      ProfileStore,
                 identity:      IdentityProvider,
                 notifications: NotificationCenter,
                 launcher:      SystemLauncher | None = None,
                 state:         PlanState | None      = None,
                 auto_init:     bool                  = True):
        self.commerce      = commerce
        self.profiles      = profiles
        self.identity      = identity
        self.notifications = notifications
        self.launcher      = launcher if launcher else WebBrowserLauncher()
        self.state         = state if state else PlanState()
        self._control      = ControlQueue()
        if auto_init:
            self.initialize()

    def __enter__(self):
        return self

    def __exit__(self, exc_type: object | None, exc_value: object | None, traceback: object | None):
        self.close()
        return False

    def close(self, timeout: float | None = 5.0):
        '''Finish the queued jobs and stop the control thread'''
        self._control.close(timeout=timeout)

    def initialize(self):
        _ = self.request_products()
        _ = self.update_subscription_status()

    @property
    def current_plan(self) -> plans.SubscriptionPlan:
        return self.state.current_plan

    @property
    def is_loading(self) -> bool:
        return self.state.is_loading

    def request_products(self) -> concurrent.futures.Future[Offerings | None]:
        result = self._control.submit(lambda: self._guard('Fetching offerings', self._request_products_on_control_thread, None))
        return result

    def update_subscription_status(self) -> concurrent.futures.Future[ReconcileStatus | None]:
        result = self._control.submit(lambda: self._guard('Updating subscription status', self._update_subscription_status_on_control_thread, None))
        return result

    def buy_product(self, package: Package) -> concurrent.futures.Future[StoreOutcome]:
        log.info(f'Initiating purchase for package: {package.identifier}')
        result = self._control.submit(lambda: self._guard('Purchase', lambda: self._buy_product_on_control_thread(package), StoreOutcome(success=False, msg='Unknown error occurred')))
        return result

    def restore_purchases(self) -> concurrent.futures.Future[StoreOutcome]:
        log.info('Restoring purchases')
        result = self._control.submit(lambda: self._guard('Restore', self._restore_purchases_on_control_thread, StoreOutcome(success=False, msg='Unknown error occurred')))
        return result

    def reconcile(self, active_entitlements: collections.abc.Iterable[str]) -> concurrent.futures.Future[ReconcileStatus | None]:
        entitlements = frozenset(active_entitlements)
        result       = self._control.submit(lambda: self._guard('Reconcile', lambda: self._reconcile_on_control_thread(entitlements), None))
        return result

    def manage_subscriptions(self) -> concurrent.futures.Future[None]:
        log.info('Opening subscription management')
        result = self._control.submit(lambda: self._guard('Opening subscription management', self._manage_subscriptions_on_control_thread, None))
        return result

    def _guard(self, label: str, fn: typing.Callable[[], T], fallback: T) -> T:
        # NOTE: Last line of defence so that a misbehaving collaborator can't take down the
        # control thread's caller with an exception, collaborators are meant to report errors
        # through the error sink.
        try:
            result = fn()
        except Exception:
            log.error(f'{label} failed unexpectedly: {traceback.format_exc()}')
            result = fallback
        return result

    def _request_products_on_control_thread(self) -> Offerings | None:
        assert self._control.is_control_thread()
        self.state.begin_loading()
        self.state.set_offerings(None, OfferingsState.Loading)
        err                      = ErrorSink()
        result: Offerings | None = None
        try:
            result = self.commerce.fetch_offerings(err)
        except Exception:
            self.state.set_offerings(None, OfferingsState.Error)
            raise
        finally:
            self.state.end_loading()

        if err.has():
            log.error(f'Error fetching offerings: {err.build()}')
            self.state.set_offerings(None, OfferingsState.Error)
            return None

        if result is None:
            log.warning('No offerings found')
            self.state.set_offerings(None, OfferingsState.Idle)
            return None

        log.info(f'Found offerings: {", ".join(result.all.keys())}')
        self.state.set_offerings(result, OfferingsState.Idle)
        return result

    def _update_subscription_status_on_control_thread(self) -> ReconcileStatus | None:
        err           = ErrorSink()
        customer_info = self.commerce.fetch_customer_info(err)
        if err.has():
            log.error(f'Error fetching customer info: {err.build()}')
            return None

        result: ReconcileStatus | None = None
        if customer_info:
            result = self._reconcile_on_control_thread(customer_info.active_entitlements)
        return result

    def _complete_with_customer_info(self, label: str, customer_info: CustomerInfo | None, err: ErrorSink) -> StoreOutcome:
        if err.has():
            log.error(f'{label} failed: {err.build()}')
            return StoreOutcome(success=False, msg=err.build())

        if customer_info is None:
            return StoreOutcome(success=False, msg='Unknown error occurred')

        log.info(f'{label} successful')
        _ = self._reconcile_on_control_thread(customer_info.active_entitlements)
        return StoreOutcome(success=True)

    def _buy_product_on_control_thread(self, package: Package) -> StoreOutcome:
        assert self._control.is_control_thread()
        self.state.begin_loading()
        err                            = ErrorSink()
        purchase_result: PurchaseResult = PurchaseResult()
        try:
            purchase_result = self.commerce.purchase(package, err)
        finally:
            self.state.end_loading()

        if purchase_result.user_cancelled:
            log.info(f'Purchase cancelled for package: {package.identifier}')
            return StoreOutcome(success=False, msg='Purchase cancelled', cancelled=True)

        result = self._complete_with_customer_info('Purchase', purchase_result.customer_info, err)
        return result

    def _restore_purchases_on_control_thread(self) -> StoreOutcome:
        assert self._control.is_control_thread()
        self.state.begin_loading()
        err                                = ErrorSink()
        customer_info: CustomerInfo | None = None
        try:
            customer_info = self.commerce.restore(err)
        finally:
            self.state.end_loading()

        result = self._complete_with_customer_info('Restore', customer_info, err)
        return result

    def _manage_subscriptions_on_control_thread(self):
        err = ErrorSink()
        url = self.commerce.management_url(err)
        if err.has():
            log.warning(f'Unable to get the management URL from the commerce backend, falling back to the App Store: {err.build()}')
        self.launcher.open(url if url else APPLE_MANAGE_SUBSCRIPTIONS_URL)

    def _reconcile_on_control_thread(self, active_entitlements: collections.abc.Iterable[str]) -> ReconcileStatus:
        assert self._control.is_control_thread()
        entitlements = frozenset(active_entitlements)
        log.info(f'Active entitlements: {sorted(entitlements)}')

        resolved: plans.ReconciliationResult = plans.resolve_entitlements(entitlements)
        plan_id                              = resolved.plan.value

        # NOTE: The in-memory plan is updated even if persisting it fails below so that the UI
        # reflects what the commerce backend says the user is entitled to.
        self.state.set_current_plan(resolved.plan)

        identity = self.identity.current_identity()
        if not identity:
            log.info(f'No authenticated user, plan {plan_id} was not persisted')
            return ReconcileStatus.NoAuthenticatedIdentity

        err  = ErrorSink()
        keys = self.profiles.find_by_identity(identity, err)
        if err.has():
            log.error(f'Error looking up user {base.obfuscate_unless_unsafe(identity)}: {err.build()}')
            return ReconcileStatus.PersistenceNotFound

        if len(keys) != 1:
            if len(keys) == 0:
                log.warning(f'User {base.obfuscate_unless_unsafe(identity)} not found in database')
            else:
                log.error(f'User {base.obfuscate_unless_unsafe(identity)} matched {len(keys)} profiles, refusing to pick one')
            return ReconcileStatus.PersistenceNotFound

        if not self.profiles.update_fields(keys[0], subscription_plan=plan_id, room_limit=resolved.room_limit, err=err) or err.has():
            log.error(f'Error updating user subscription: {err.build()}')
            return ReconcileStatus.PersistenceWriteFailed

        log.info(f'Successfully updated user subscription to {plan_id} with limit {resolved.room_limit}')
        self.notifications.publish(TOPIC_SUBSCRIPTION_UPDATED, {'plan': plan_id, 'limit': resolved.room_limit})
        return ReconcileStatus.Success
