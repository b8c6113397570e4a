'''
Testing module for the Room Store, testing the plan registry, the entitlement resolver, the store
manager's reconciliation against fake and SQLite backed collaborators, the REST clients against a
fake HTTP pool and the HTTP layer.

The server tests spins up a local Flask instance as per
(https://flask.palletsprojects.com/en/stable/testing/#sending-requests-with-the-test-client) and
sends a request using the test client and we vet the request and response produced by hitting said
endpoint.
'''

import dataclasses
import flask
import json
import os
import threading
import typing
import urllib.parse
import werkzeug

import base
import notify
import plans
import platform_revenuecat
import profiles
import server
import store_manager
from plans import SubscriptionPlan
from platform_revenuecat import CommerceBackend, CustomerInfo, Offerings, Offering, Package, PurchaseResult
from profiles import ProfileStore
from store_manager import StoreManager, StoreOutcome, ReconcileStatus

FUTURE_TIMEOUT_S = 5

class FakeCommerce(CommerceBackend):
    def __init__(self):
        self.offerings:          Offerings | None    = None
        self.customer_info:      CustomerInfo | None = None
        self.purchase_result:    PurchaseResult      = PurchaseResult()
        self.error:              str                 = ''
        self.management:         str | None          = None
        self.purchase_gate:      threading.Event | None = None
        self.calls:              list[str]           = []
        self.call_threads:       set[str]            = set()

    def _record(self, name: str, err: base.ErrorSink) -> bool:
        self.calls.append(name)
        self.call_threads.add(threading.current_thread().name)
        if len(self.error):
            err.msg_list.append(self.error)
        return not err.has()

    def fetch_offerings(self, err: base.ErrorSink) -> Offerings | None:
        return self.offerings if self._record('fetch_offerings', err) else None

    def purchase(self, package: Package, err: base.ErrorSink) -> PurchaseResult:
        if self.purchase_gate:
            assert self.purchase_gate.wait(timeout=FUTURE_TIMEOUT_S)
        return self.purchase_result if self._record('purchase', err) else PurchaseResult()

    def restore(self, err: base.ErrorSink) -> CustomerInfo | None:
        return self.customer_info if self._record('restore', err) else None

    def fetch_customer_info(self, err: base.ErrorSink) -> CustomerInfo | None:
        return self.customer_info if self._record('fetch_customer_info', err) else None

    def management_url(self, err: base.ErrorSink) -> str | None:
        return self.management if self._record('management_url', err) else None

@dataclasses.dataclass
class FakeUpdate:
    key:               str = ''
    subscription_plan: str = ''
    room_limit:        int = 0

class FakeProfileStore(ProfileStore):
    def __init__(self, keys: list[str] | None = None, fail_update: bool = False):
        self.keys:        list[str]        = keys if keys is not None else ['user-key-0']
        self.fail_update: bool             = fail_update
        self.lookups:     list[str]        = []
        self.updates:     list[FakeUpdate] = []

    def find_by_identity(self, identity: str, err: base.ErrorSink) -> list[str]:
        self.lookups.append(identity)
        return list(self.keys)

    def update_fields(self, key: str, subscription_plan: str, room_limit: int, err: base.ErrorSink) -> bool:
        self.updates.append(FakeUpdate(key=key, subscription_plan=subscription_plan, room_limit=room_limit))
        if self.fail_update:
            err.msg_list.append('Permission denied')
            return False
        return True

class FakeLauncher(store_manager.SystemLauncher):
    def __init__(self):
        self.urls: list[str] = []

    def open(self, url: str):
        self.urls.append(url)

@dataclasses.dataclass
class FakeHTTPResponse:
    status: int   = 200
    data:   bytes = b''

@dataclasses.dataclass
class FakeHTTPRequest:
    method:  str                   = ''
    url:     str                   = ''
    body:    bytes | None          = None
    headers: dict[str, str] | None = None

class FakeHTTP:
    '''Stands in for urllib3.PoolManager, responds with the queued responses in order'''
    def __init__(self, responses: list[FakeHTTPResponse]):
        self.responses: list[FakeHTTPResponse] = responses
        self.requests:  list[FakeHTTPRequest]  = []

    def request(self, method: str, url: str, body: bytes | None = None, headers: dict[str, str] | None = None) -> FakeHTTPResponse:
        self.requests.append(FakeHTTPRequest(method=method, url=url, body=body, headers=headers))
        return self.responses.pop(0)

@dataclasses.dataclass
class Published:
    topic:   str                   = ''
    payload: dict[str, typing.Any] = dataclasses.field(default_factory=dict)

def make_store(commerce:  FakeCommerce | None          = None,
               profiles_: ProfileStore | None          = None,
               identity:  str | None                   = 'u1',
               launcher:  FakeLauncher | None          = None,
               auto_init: bool                         = False) -> tuple[StoreManager, list[Published]]:
    published: list[Published] = []
    center                     = notify.NotificationCenter()
    _                          = center.subscribe(notify.TOPIC_SUBSCRIPTION_UPDATED, lambda topic, payload: published.append(Published(topic=topic, payload=payload)))
    result = StoreManager(commerce      = commerce if commerce else FakeCommerce(),
                          profiles      = profiles_ if profiles_ is not None else FakeProfileStore(),
                          identity      = store_manager.StaticIdentityProvider(identity),
                          notifications = center,
                          launcher      = launcher if launcher else FakeLauncher(),
                          auto_init     = auto_init)
    return result, published

def make_subscriber_json(entitlements: dict[str, str | None], request_date_ms: int = 1_700_000_000_000, management_url: str | None = None) -> dict[str, typing.Any]:
    result = {
        'request_date':    '2023-11-14T22:13:20Z',
        'request_date_ms': request_date_ms,
        'subscriber': {
            'original_app_user_id': 'u1',
            'management_url':       management_url,
            'entitlements':         {name: {'expires_date': expires, 'product_identifier': 'x', 'purchase_date': '2023-01-01T00:00:00Z'} for name, expires in entitlements.items()},
            'subscriptions':        {},
        },
    }
    return result

def make_offerings() -> Offerings:
    packages = [Package(identifier=f'room{i:02d}', product_id=f'com.zthreesolutions.tolerancetracker.room{i:02d}', offering_id='default') for i in range(1, 6)]
    result   = Offerings(current_offering_id='default', all={'default': Offering(identifier='default', description='Rooms', packages=packages)})
    return result

def test_plan_registry():
    if 1: # Unrecognised identifiers never fail, they map to no plan
        for identifier in ['', 'none', 'room01', 'com.zthreesolutions.tolerancetracker.room06', '1_entitlement']:
            plan = plans.lookup(identifier)
            assert plan                     == SubscriptionPlan.Nil, identifier
            assert plans.room_limit_of(plan) == 0

    if 1: # Tiers map to their own room count and increase with rank
        previous_limit = 0
        for tier in range(1, 6):
            identifier = f'com.zthreesolutions.tolerancetracker.room{tier:02d}'
            plan       = plans.lookup(identifier)
            assert plan.value                                == identifier
            assert plans.room_limit_of(plan)                 == tier
            assert plans.room_limit_for_product(identifier) == tier
            assert plans.room_limit_of(plan)                 >  previous_limit
            previous_limit = plans.room_limit_of(plan)

    if 1: # Every plan has a display name
        assert plans.display_name_of(SubscriptionPlan.Nil)   == 'No Subscription'
        assert plans.display_name_of(SubscriptionPlan.Room1) == '1 Room Plan'
        assert plans.display_name_of(SubscriptionPlan.Room5) == '5 Room Plan'
        for plan in SubscriptionPlan:
            assert len(plans.display_name_of(plan)) > 0

    if 1: # Entitlement labels
        assert plans.plan_from_entitlement('2_entitlement') == SubscriptionPlan.Room2
        assert plans.plan_from_entitlement('pro')           == SubscriptionPlan.Nil

def test_resolve_entitlements():
    assert plans.resolve_entitlements(set())              == plans.ReconciliationResult(SubscriptionPlan.Nil, 0)
    assert plans.resolve_entitlements({'3_entitlement'})  == plans.ReconciliationResult(SubscriptionPlan.Room3, 3)
    assert plans.resolve_entitlements({'pro', 'premium'}) == plans.ReconciliationResult(SubscriptionPlan.Nil, 0)

    # NOTE: Multiple active entitlements resolve to the highest room limit regardless of the
    # order they are given in
    assert plans.resolve_entitlements(['2_entitlement', '5_entitlement']) == plans.ReconciliationResult(SubscriptionPlan.Room5, 5)
    assert plans.resolve_entitlements(['5_entitlement', '2_entitlement']) == plans.ReconciliationResult(SubscriptionPlan.Room5, 5)
    assert plans.resolve_entitlements(['1_entitlement', 'bogus', '4_entitlement', '3_entitlement']).plan == SubscriptionPlan.Room4

    # NOTE: Pure, same input yields same output and the input is untouched
    active = {'1_entitlement', '4_entitlement'}
    first  = plans.resolve_entitlements(active)
    second = plans.resolve_entitlements(active)
    assert first  == second
    assert active == {'1_entitlement', '4_entitlement'}

def test_reconcile_without_identity_only_updates_plan():
    profile_store    = FakeProfileStore()
    store, published = make_store(profiles_=profile_store, identity=None)
    with store:
        status = store.reconcile({'2_entitlement'}).result(timeout=FUTURE_TIMEOUT_S)
        assert status              == ReconcileStatus.NoAuthenticatedIdentity
        assert store.current_plan  == SubscriptionPlan.Room2
        assert profile_store.lookups == []
        assert profile_store.updates == []
        assert published             == []

def test_reconcile_write_failure_does_not_publish():
    profile_store    = FakeProfileStore(fail_update=True)
    store, published = make_store(profiles_=profile_store)
    with store:
        status = store.reconcile({'5_entitlement'}).result(timeout=FUTURE_TIMEOUT_S)
        assert status                  == ReconcileStatus.PersistenceWriteFailed
        assert store.current_plan      == SubscriptionPlan.Room5
        assert len(profile_store.updates) == 1
        assert published               == []

def test_reconcile_requires_exactly_one_profile():
    for keys in [[], ['a', 'b']]:
        profile_store    = FakeProfileStore(keys=keys)
        store, published = make_store(profiles_=profile_store)
        with store:
            status = store.reconcile({'1_entitlement'}).result(timeout=FUTURE_TIMEOUT_S)
            assert status                 == ReconcileStatus.PersistenceNotFound
            assert store.current_plan     == SubscriptionPlan.Room1
            assert profile_store.lookups  == ['u1']
            assert profile_store.updates  == []
            assert published              == []

def test_reconcile_success_publishes_change():
    profile_store    = FakeProfileStore(keys=['k1'])
    store, published = make_store(profiles_=profile_store)
    with store:
        status = store.reconcile({'3_entitlement'}).result(timeout=FUTURE_TIMEOUT_S)
        assert status                == ReconcileStatus.Success
        assert profile_store.updates == [FakeUpdate(key='k1', subscription_plan=SubscriptionPlan.Room3.value, room_limit=3)]
        assert published             == [Published(topic='SubscriptionUpdated', payload={'plan': SubscriptionPlan.Room3.value, 'limit': 3})]

        # NOTE: Losing every entitlement downgrades the profile back to no plan
        status = store.reconcile(set()).result(timeout=FUTURE_TIMEOUT_S)
        assert status                   == ReconcileStatus.Success
        assert store.current_plan       == SubscriptionPlan.Nil
        assert profile_store.updates[-1] == FakeUpdate(key='k1', subscription_plan='none', room_limit=0)
        assert published[-1].payload    == {'plan': 'none', 'limit': 0}

def test_purchase_outcomes():
    if 1: # User dismissed the purchase sheet
        commerce                                = FakeCommerce()
        commerce.purchase_result.user_cancelled = True
        profile_store                           = FakeProfileStore()
        store, published                        = make_store(commerce=commerce, profiles_=profile_store)
        with store:
            outcome: StoreOutcome = store.buy_product(Package(identifier='room01')).result(timeout=FUTURE_TIMEOUT_S)
            assert outcome                == StoreOutcome(success=False, msg='Purchase cancelled', cancelled=True)
            assert store.current_plan     == SubscriptionPlan.Nil
            assert store.is_loading       == False
            assert profile_store.lookups  == []
            assert published              == []

    if 1: # Commerce backend failed, nothing is persisted
        commerce         = FakeCommerce()
        commerce.error   = 'Network unavailable'
        profile_store    = FakeProfileStore()
        store, published = make_store(commerce=commerce, profiles_=profile_store)
        with store:
            outcome = store.buy_product(Package(identifier='room01', fetch_token='abc')).result(timeout=FUTURE_TIMEOUT_S)
            assert outcome.success       == False
            assert outcome.cancelled     == False
            assert outcome.msg           == 'Network unavailable'
            assert store.is_loading      == False
            assert profile_store.updates == []
            assert published             == []

    if 1: # Purchase succeeded but the backend didn't send the customer back
        commerce         = FakeCommerce()
        store, published = make_store(commerce=commerce)
        with store:
            outcome = store.buy_product(Package(identifier='room01')).result(timeout=FUTURE_TIMEOUT_S)
            assert outcome == StoreOutcome(success=False, msg='Unknown error occurred')

    if 1: # Purchase succeeded, reconciled with the returned customer info
        commerce                               = FakeCommerce()
        commerce.purchase_result.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'2_entitlement'})
        profile_store                          = FakeProfileStore()
        store, published                       = make_store(commerce=commerce, profiles_=profile_store)
        with store:
            outcome = store.buy_product(Package(identifier='room02')).result(timeout=FUTURE_TIMEOUT_S)
            assert outcome                == StoreOutcome(success=True)
            assert store.current_plan     == SubscriptionPlan.Room2
            assert len(published)         == 1
            assert commerce.call_threads  == {'store-control'}

def test_restore_outcomes():
    if 1:
        commerce               = FakeCommerce()
        commerce.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'4_entitlement', '1_entitlement'})
        store, published       = make_store(commerce=commerce)
        with store:
            outcome = store.restore_purchases().result(timeout=FUTURE_TIMEOUT_S)
            assert outcome            == StoreOutcome(success=True)
            assert store.current_plan == SubscriptionPlan.Room4
            assert published[0].payload == {'plan': SubscriptionPlan.Room4.value, 'limit': 4}

    if 1:
        commerce         = FakeCommerce()
        store, published = make_store(commerce=commerce)
        with store:
            outcome = store.restore_purchases().result(timeout=FUTURE_TIMEOUT_S)
            assert outcome    == StoreOutcome(success=False, msg='Unknown error occurred')
            assert published  == []

    if 1:
        commerce         = FakeCommerce()
        commerce.error   = 'Receipt is missing'
        store, published = make_store(commerce=commerce)
        with store:
            outcome = store.restore_purchases().result(timeout=FUTURE_TIMEOUT_S)
            assert outcome.success == False
            assert outcome.msg     == 'Receipt is missing'

def test_collaborator_exception_is_contained():
    class ExplodingCommerce(FakeCommerce):
        def restore(self, err: base.ErrorSink) -> CustomerInfo | None:
            raise RuntimeError('boom')

    store, published = make_store(commerce=ExplodingCommerce())
    with store:
        outcome = store.restore_purchases().result(timeout=FUTURE_TIMEOUT_S)
        assert outcome          == StoreOutcome(success=False, msg='Unknown error occurred')
        assert store.is_loading == False

        # NOTE: The control thread survives and keeps serving jobs
        status = store.reconcile({'1_entitlement'}).result(timeout=FUTURE_TIMEOUT_S)
        assert status == ReconcileStatus.Success

def test_offerings_fetch_always_leaves_loading_state():
    if 1: # Backend raised, the fetch ends in the error state
        class ExplodingCommerce(FakeCommerce):
            def fetch_offerings(self, err: base.ErrorSink) -> Offerings | None:
                raise RuntimeError('boom')

        store, _ = make_store(commerce=ExplodingCommerce())
        with store:
            offerings = store.request_products().result(timeout=FUTURE_TIMEOUT_S)
            assert offerings                   is None
            assert store.state.offerings_state == notify.OfferingsState.Error
            assert store.is_loading            == False

    if 1: # Backend has nothing to offer, not an error
        commerce = FakeCommerce()
        states: list[notify.OfferingsState] = []
        store, _ = make_store(commerce=commerce)
        _        = store.state.subscribe(lambda s: states.append(s.offerings_state))
        with store:
            offerings = store.request_products().result(timeout=FUTURE_TIMEOUT_S)
            assert offerings                   is None
            assert store.state.offerings       is None
            assert store.state.offerings_state == notify.OfferingsState.Idle
            assert store.is_loading            == False
            assert notify.OfferingsState.Loading in states
            assert states[-1]                  == notify.OfferingsState.Idle

def test_operations_are_serialized():
    # Hold the purchase on the control thread and check a reconcile submitted afterwards doesn't
    # overtake it.
    commerce                               = FakeCommerce()
    commerce.purchase_gate                 = threading.Event()
    commerce.purchase_result.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'5_entitlement'})
    profile_store                          = FakeProfileStore()
    store, published                       = make_store(commerce=commerce, profiles_=profile_store)
    with store:
        purchase_future  = store.buy_product(Package(identifier='room05'))
        reconcile_future = store.reconcile({'1_entitlement'})
        assert not reconcile_future.done()

        commerce.purchase_gate.set()
        assert purchase_future.result(timeout=FUTURE_TIMEOUT_S).success
        assert reconcile_future.result(timeout=FUTURE_TIMEOUT_S) == ReconcileStatus.Success

        # NOTE: Last submitted wins
        assert [it.room_limit for it in profile_store.updates] == [5, 1]
        assert [it.payload['limit'] for it in published]       == [5, 1]
        assert store.current_plan                              == SubscriptionPlan.Room1
        assert store.is_loading                                == False

def test_initialize_fetches_offerings_and_entitlements():
    if 1:
        commerce               = FakeCommerce()
        commerce.offerings     = make_offerings()
        commerce.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'3_entitlement'})
        store, published       = make_store(commerce=commerce, auto_init=True)
        with store:
            # NOTE: Jobs run in order, waiting on a later job waits for initialisation too
            _ = store.reconcile({'3_entitlement'}).result(timeout=FUTURE_TIMEOUT_S)
            assert commerce.calls[:2]          == ['fetch_offerings', 'fetch_customer_info']
            assert store.state.offerings       == commerce.offerings
            assert store.state.offerings_state == notify.OfferingsState.Idle
            assert store.current_plan          == SubscriptionPlan.Room3
            assert store.is_loading            == False

    if 1:
        commerce         = FakeCommerce()
        commerce.error   = 'Service unavailable'
        store, published = make_store(commerce=commerce, auto_init=True)
        with store:
            offerings = store.request_products().result(timeout=FUTURE_TIMEOUT_S)
            assert offerings                   is None
            assert store.state.offerings_state == notify.OfferingsState.Error
            assert store.current_plan          == SubscriptionPlan.Nil
            assert published                   == []

def test_manage_subscriptions_opens_management_url():
    if 1:
        commerce            = FakeCommerce()
        commerce.management = 'https://play.google.com/store/account/subscriptions'
        launcher            = FakeLauncher()
        store, _            = make_store(commerce=commerce, launcher=launcher)
        with store:
            store.manage_subscriptions().result(timeout=FUTURE_TIMEOUT_S)
            assert launcher.urls == ['https://play.google.com/store/account/subscriptions']

    if 1:
        commerce       = FakeCommerce()
        commerce.error = 'Offline'
        launcher       = FakeLauncher()
        store, _       = make_store(commerce=commerce, launcher=launcher)
        with store:
            store.manage_subscriptions().result(timeout=FUTURE_TIMEOUT_S)
            assert launcher.urls == [store_manager.APPLE_MANAGE_SUBSCRIPTIONS_URL]

def test_end_to_end_with_sqlite_profile_store():
    err    = base.ErrorSink()
    db_uri = f'file:test_room_store_{os.urandom(4).hex()}?mode=memory&cache=shared'
    db     = profiles.setup_db(path=db_uri, uri=True, err=err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert db.sql_conn

    profiles.add_user(db.sql_conn, key='-Nkey0', auth_id='u1')
    profiles.add_user(db.sql_conn, key='-Nkey1', auth_id='someone-else', subscription_plan=SubscriptionPlan.Room1.value, room_limit=1)

    commerce               = FakeCommerce()
    commerce.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'4_entitlement'})
    profile_store          = profiles.SQLiteProfileStore(db_path=db_uri, uri=True)
    store, published       = make_store(commerce=commerce, profiles_=profile_store)
    with store:
        status = store.update_subscription_status().result(timeout=FUTURE_TIMEOUT_S)
        assert status == ReconcileStatus.Success

    user = profiles.get_user(db.sql_conn, '-Nkey0')
    assert user.found
    assert user.subscription_plan == 'com.zthreesolutions.tolerancetracker.room04'
    assert user.room_limit        == 4
    assert published              == [Published(topic='SubscriptionUpdated', payload={'plan': 'com.zthreesolutions.tolerancetracker.room04', 'limit': 4})]

    # NOTE: Nobody else's profile is touched
    other = profiles.get_user(db.sql_conn, '-Nkey1')
    assert other.subscription_plan == SubscriptionPlan.Room1.value
    assert other.room_limit        == 1
    assert len(profiles.get_users_list(db.sql_conn)) == 2
    db.sql_conn.close()

def test_sqlite_profile_store_lookup_and_update():
    err    = base.ErrorSink()
    db_uri = f'file:test_room_store_{os.urandom(4).hex()}?mode=memory&cache=shared'
    db     = profiles.setup_db(path=db_uri, uri=True, err=err)
    assert db.sql_conn

    store = profiles.SQLiteProfileStore(db_path=db_uri, uri=True)
    assert store.find_by_identity('u1', err) == []

    profiles.add_user(db.sql_conn, key='b', auth_id='u1')
    profiles.add_user(db.sql_conn, key='a', auth_id='u1')
    assert store.find_by_identity('u1', err) == ['a', 'b']
    assert len(err.msg_list) == 0, f'{err.msg_list}'

    assert store.update_fields('a', SubscriptionPlan.Room2.value, 2, err)
    assert profiles.get_user(db.sql_conn, 'a').room_limit == 2

    assert not store.update_fields('missing', SubscriptionPlan.Room2.value, 2, err)
    assert len(err.msg_list) == 1
    db.sql_conn.close()

def test_notification_center():
    center             = notify.NotificationCenter()
    received: list[str] = []

    def explode(topic: str, payload: dict[str, typing.Any]):
        raise ValueError('subscriber bug')

    _     = center.subscribe('SubscriptionUpdated', explode)
    token = center.subscribe('SubscriptionUpdated', lambda topic, payload: received.append(payload['plan']))
    _     = center.subscribe('Other',               lambda topic, payload: received.append('other'))

    center.publish('SubscriptionUpdated', {'plan': 'p1'})
    assert received == ['p1']

    assert center.unsubscribe(token)
    assert not center.unsubscribe(token)
    center.publish('SubscriptionUpdated', {'plan': 'p2'})
    assert received == ['p1']

def test_plan_state_observers():
    state                 = notify.PlanState()
    seen: list[SubscriptionPlan] = []
    token                 = state.subscribe(lambda s: seen.append(s.current_plan))

    state.set_current_plan(SubscriptionPlan.Room1)
    state.set_current_plan(SubscriptionPlan.Room1) # No change, no notification
    state.set_current_plan(SubscriptionPlan.Room3)
    assert seen == [SubscriptionPlan.Room1, SubscriptionPlan.Room3]

    state.begin_loading()
    state.begin_loading()
    assert state.is_loading
    state.end_loading()
    assert state.is_loading
    state.end_loading()
    assert not state.is_loading

    assert state.unsubscribe(token)
    count = len(seen)
    state.set_current_plan(SubscriptionPlan.Nil)
    assert len(seen) == count

def test_revenuecat_parse_customer_info():
    err          = base.ErrorSink()
    request_ms   = 1_700_000_000_000
    body         = make_subscriber_json({
        '1_entitlement': '2023-01-01T00:00:00Z',     # Expired
        '3_entitlement': '2099-01-01T00:00:00Z',     # Active
        'lifetime':      None,                       # Never expires
    }, request_date_ms=request_ms, management_url='https://apps.apple.com/account/subscriptions')
    info = platform_revenuecat.parse_customer_info(body, err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert info
    assert info.active_entitlements == {'3_entitlement', 'lifetime'}
    assert info.app_user_id         == 'u1'
    assert info.request_unix_ts_ms  == request_ms
    assert info.management_url      == 'https://apps.apple.com/account/subscriptions'
    assert plans.resolve_entitlements(info.active_entitlements).plan == SubscriptionPlan.Room3

    if 1: # Malformed payloads are reported, not raised
        err  = base.ErrorSink()
        info = platform_revenuecat.parse_customer_info({'request_date_ms': request_ms}, err)
        assert info is None
        assert len(err.msg_list) == 1

        err  = base.ErrorSink()
        info = platform_revenuecat.parse_customer_info(make_subscriber_json({'1_entitlement': 'yesterday'}), err)
        assert info is None
        assert err.has()

def test_revenuecat_parse_offerings():
    err  = base.ErrorSink()
    body = {
        'current_offering_id': 'default',
        'offerings': [{
            'identifier':  'default',
            'description': 'Room plans',
            'packages': [
                {'identifier': '$rc_monthly', 'platform_product_identifier': 'com.zthreesolutions.tolerancetracker.room01'},
                {'identifier': 'five_rooms',  'platform_product_identifier': 'com.zthreesolutions.tolerancetracker.room05'},
            ],
        }],
    }
    offerings = platform_revenuecat.parse_offerings(body, err)
    assert len(err.msg_list) == 0, f'{err.msg_list}'
    assert offerings
    current = offerings.current()
    assert current
    assert [it.identifier for it in current.packages] == ['$rc_monthly', 'five_rooms']
    package = offerings.find_package('default', 'five_rooms')
    assert package
    assert package.offering_id                                  == 'default'
    assert plans.room_limit_for_product(package.product_id)     == 5
    assert offerings.find_package('default', 'missing')         is None

    err = base.ErrorSink()
    assert platform_revenuecat.parse_offerings({'offerings': 'nope'}, err) is None
    assert err.has()

def test_revenuecat_backend_requests():
    subscriber = make_subscriber_json({'2_entitlement': '2099-01-01T00:00:00Z'})

    if 1: # Customer info is requested for the signed in user with the API key
        identity = store_manager.StaticIdentityProvider('user/1')
        http     = FakeHTTP([FakeHTTPResponse(status=200, data=json.dumps(subscriber).encode('utf-8'))])
        backend  = platform_revenuecat.RevenueCatBackend(api_key='sk_test', app_user_id=identity.current_identity, platform='android', http=typing.cast(typing.Any, http))
        err      = base.ErrorSink()
        info     = backend.fetch_customer_info(err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'
        assert info and info.active_entitlements == {'2_entitlement'}
        assert http.requests[0].method == 'GET'
        assert http.requests[0].url    == 'https://api.revenuecat.com/v1/subscribers/user%2F1'
        assert http.requests[0].headers
        assert http.requests[0].headers['Authorization'] == 'Bearer sk_test'
        assert http.requests[0].headers['X-Platform']    == 'android'

    if 1: # Purchase posts the receipt
        http    = FakeHTTP([FakeHTTPResponse(status=200, data=json.dumps(subscriber).encode('utf-8'))])
        backend = platform_revenuecat.RevenueCatBackend(api_key='sk_test', app_user_id=lambda: 'u1', http=typing.cast(typing.Any, http))
        err     = base.ErrorSink()
        result  = backend.purchase(Package(identifier='room02', product_id=SubscriptionPlan.Room2.value, fetch_token='receipt'), err)
        assert len(err.msg_list) == 0, f'{err.msg_list}'
        assert not result.user_cancelled
        assert result.customer_info and result.customer_info.active_entitlements == {'2_entitlement'}
        assert http.requests[0].method == 'POST'
        assert http.requests[0].url.endswith('/receipts')
        assert http.requests[0].body
        assert json.loads(http.requests[0].body) == {'app_user_id': 'u1', 'fetch_token': 'receipt', 'product_id': SubscriptionPlan.Room2.value}

    if 1: # No receipt token means the user cancelled, nothing is sent
        http    = FakeHTTP([])
        backend = platform_revenuecat.RevenueCatBackend(api_key='sk_test', app_user_id=lambda: 'u1', http=typing.cast(typing.Any, http))
        err     = base.ErrorSink()
        result  = backend.purchase(Package(identifier='room02'), err)
        assert result.user_cancelled
        assert http.requests == []

    if 1: # Errors end up in the sink
        http    = FakeHTTP([FakeHTTPResponse(status=500, data=b'{"message": "oops"}'), FakeHTTPResponse(status=200, data=b'not json')])
        backend = platform_revenuecat.RevenueCatBackend(api_key='sk_test', app_user_id=lambda: 'u1', http=typing.cast(typing.Any, http))
        err     = base.ErrorSink()
        assert backend.fetch_offerings(err) is None
        assert 'status 500' in err.msg_list[0]
        err     = base.ErrorSink()
        assert backend.restore(err) is None
        assert 'invalid JSON' in err.msg_list[0]

    if 1: # Nobody signed in
        backend = platform_revenuecat.RevenueCatBackend(api_key='sk_test', app_user_id=lambda: None, http=typing.cast(typing.Any, FakeHTTP([])))
        err     = base.ErrorSink()
        assert backend.fetch_customer_info(err) is None
        assert err.has()

def test_firebase_profile_store_requests():
    if 1:
        http  = FakeHTTP([FakeHTTPResponse(status=200, data=json.dumps({'-Nkey0': {'authId': 'u1', 'roomLimit': 0}}).encode('utf-8'))])
        store = profiles.FirebaseProfileStore(database_url='https://example.firebaseio.com/', auth_token='secret', http=typing.cast(typing.Any, http))
        err   = base.ErrorSink()
        assert store.find_by_identity('u1', err) == ['-Nkey0']
        assert len(err.msg_list) == 0, f'{err.msg_list}'

        url   = urllib.parse.urlparse(http.requests[0].url)
        query = urllib.parse.parse_qs(url.query)
        assert url.path                == '/users.json'
        assert query['orderBy']        == ['"authId"']
        assert query['equalTo']        == ['"u1"']
        assert query['auth']           == ['secret']

    if 1:
        http  = FakeHTTP([FakeHTTPResponse(status=200, data=b'{}'), FakeHTTPResponse(status=200, data=b'{"subscriptionPlan": "none", "roomLimit": 0}')])
        store = profiles.FirebaseProfileStore(database_url='https://example.firebaseio.com', http=typing.cast(typing.Any, http))
        err   = base.ErrorSink()
        assert store.find_by_identity('nobody', err) == []
        assert store.update_fields('-Nkey0', 'none', 0, err)
        assert http.requests[1].method == 'PATCH'
        assert http.requests[1].url    == 'https://example.firebaseio.com/users/-Nkey0.json'
        assert http.requests[1].body
        assert json.loads(http.requests[1].body) == {'subscriptionPlan': 'none', 'roomLimit': 0}

    if 1:
        http  = FakeHTTP([FakeHTTPResponse(status=401, data=b'{"error": "Permission denied"}')])
        store = profiles.FirebaseProfileStore(database_url='https://example.firebaseio.com', http=typing.cast(typing.Any, http))
        err   = base.ErrorSink()
        assert not store.update_fields('-Nkey0', 'none', 0, err)
        assert 'status 401' in err.msg_list[0]

def test_server_routes():
    commerce                               = FakeCommerce()
    commerce.offerings                     = make_offerings()
    commerce.purchase_result.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'2_entitlement'})
    store, published                       = make_store(commerce=commerce, auto_init=True)
    with store:
        flask_app:    flask.Flask     = server.init(testing_mode=True, store_manager=store)
        flask_client: werkzeug.Client = flask_app.test_client()

        if 1: # Offerings
            response = flask_client.post(server.ROUTE_GET_OFFERINGS, data=json.dumps({'version': 0}))
            assert response.status_code == 200, response.data
            result = response.json['result']
            assert result['current_offering_id'] == 'default'
            assert [it['room_limit'] for it in result['offerings'][0]['packages']] == [1, 2, 3, 4, 5]

        if 1: # Purchase a package that is on offer
            request_body = {'version': 0, 'offering_id': 'default', 'package_id': 'room02', 'fetch_token': 'receipt'}
            response     = flask_client.post(server.ROUTE_PURCHASE, data=json.dumps(request_body))
            assert response.status_code == 200, response.data
            result = response.json['result']
            assert result['success']    == True
            assert result['plan']       == SubscriptionPlan.Room2.value
            assert result['room_limit'] == 2
            assert len(published)       == 1

        if 1: # Current plan
            response = flask_client.post(server.ROUTE_GET_PLAN, data=json.dumps({'version': 0}))
            assert response.status_code == 200, response.data
            assert response.json['result']['display_name'] == '2 Room Plan'
            assert response.json['result']['is_loading']   == False

        if 1: # Unknown packages, versions and malformed bodies are rejected
            response = flask_client.post(server.ROUTE_PURCHASE, data=json.dumps({'version': 0, 'offering_id': 'default', 'package_id': 'room09'}))
            assert response.status_code == 400
            response = flask_client.post(server.ROUTE_GET_PLAN, data=json.dumps({'version': 1}))
            assert response.status_code == 400
            response = flask_client.post(server.ROUTE_RESTORE, data=b'{not json')
            assert response.status_code == 400

        if 1: # Manage subscriptions is fire-and-forget
            response = flask_client.post(server.ROUTE_MANAGE_SUBSCRIPTIONS, data=json.dumps({'version': 0}))
            assert response.status_code == 200

def test_server_refresh_and_restore_routes():
    commerce               = FakeCommerce()
    commerce.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'3_entitlement'})
    store, published       = make_store(commerce=commerce)
    with store:
        flask_app:    flask.Flask     = server.init(testing_mode=True, store_manager=store)
        flask_client: werkzeug.Client = flask_app.test_client()

        if 1: # Refresh re-reads the customer and reconciles
            response = flask_client.post(server.ROUTE_REFRESH, data=json.dumps({'version': 0}))
            assert response.status_code == 200, response.data
            result = response.json['result']
            assert result['version']          == 0
            assert result['reconcile_status'] == 'Success'
            assert result['plan']             == SubscriptionPlan.Room3.value
            assert result['display_name']     == '3 Room Plan'
            assert result['room_limit']       == 3
            assert len(published)             == 1

        if 1: # Restore picks up the restored entitlement
            commerce.customer_info = CustomerInfo(app_user_id='u1', active_entitlements={'4_entitlement'})
            response               = flask_client.post(server.ROUTE_RESTORE, data=json.dumps({'version': 0}))
            assert response.status_code == 200, response.data
            result = response.json['result']
            assert result['success']      == True
            assert result['msg']          is None
            assert result['cancelled']    == False
            assert result['plan']         == SubscriptionPlan.Room4.value
            assert result['display_name'] == '4 Room Plan'
            assert result['room_limit']   == 4
            assert published[-1].payload  == {'plan': SubscriptionPlan.Room4.value, 'limit': 4}

        if 1: # Backend failure leaves the plan alone and reports no status
            commerce.error = 'Service unavailable'
            response       = flask_client.post(server.ROUTE_REFRESH, data=json.dumps({'version': 0}))
            assert response.status_code == 200, response.data
            result = response.json['result']
            assert result['reconcile_status'] is None
            assert result['room_limit']       == 4

            response = flask_client.post(server.ROUTE_RESTORE, data=json.dumps({'version': 0}))
            assert response.status_code == 200, response.data
            assert response.json['result']['success'] == False
            assert response.json['result']['msg']     == 'Service unavailable'

    if 1: # Nobody signed in, the plan is only updated in memory
        commerce               = FakeCommerce()
        commerce.customer_info = CustomerInfo(app_user_id='', active_entitlements={'1_entitlement'})
        store, published       = make_store(commerce=commerce, identity=None)
        with store:
            flask_client = server.init(testing_mode=True, store_manager=store).test_client()
            response     = flask_client.post(server.ROUTE_REFRESH, data=json.dumps({'version': 0}))
            assert response.status_code                         == 200, response.data
            assert response.json['result']['reconcile_status'] == 'NoAuthenticatedIdentity'
            assert response.json['result']['room_limit']       == 1
            assert published                                    == []
