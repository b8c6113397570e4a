'''
Commerce backend layer. The store manager talks to the commerce backend through the
`CommerceBackend` interface which RevenueCat implements here via its REST API (v1). Purchase
verification, receipt validation and cross-device syncing all happen on RevenueCat's side, this
layer only shuttles requests to it and parses the customer info and offerings it responds with into
strongly typed (to Python's best ability) types.

    Subscribers
      https://www.revenuecat.com/docs/api-v1#tag/customers
    Offerings
      https://www.revenuecat.com/docs/api-v1#tag/offerings
'''

import dataclasses
import json
import logging
import time
import typing
import urllib.parse
import urllib3

import base
from base import (
    JSONObject,
    ErrorSink,
    json_dict_require_str,
    json_dict_require_obj,
    json_dict_require_array,
    json_dict_optional_str,
    json_dict_optional_obj,
    safe_dump_arbitrary_value_or_type,
    handle_not_implemented,
)

log = logging.Logger('REVENUECAT')

REVENUECAT_BASE_URL: str = 'https://api.revenuecat.com/v1'
REQUEST_TIMEOUT_S:   int = 10

@dataclasses.dataclass
class CustomerInfo:
    app_user_id:         str           = ''
    active_entitlements: set[str]      = dataclasses.field(default_factory=set)
    management_url:      str | None    = None
    request_unix_ts_ms:  int           = 0

@dataclasses.dataclass
class Package:
    identifier:  str = ''
    product_id:  str = ''
    offering_id: str = ''

    # Receipt token handed back by the platform's purchase sheet (App Store receipt or Google Play
    # purchase token). Empty if the user dismissed the sheet without paying.
    fetch_token: str = ''

@dataclasses.dataclass
class Offering:
    identifier:  str           = ''
    description: str           = ''
    packages:    list[Package] = dataclasses.field(default_factory=list)

@dataclasses.dataclass
class Offerings:
    current_offering_id: str | None          = None
    all:                 dict[str, Offering] = dataclasses.field(default_factory=dict)

    def current(self) -> Offering | None:
        result = self.all.get(self.current_offering_id) if self.current_offering_id else None
        return result

    def find_package(self, offering_id: str, package_id: str) -> Package | None:
        result: Package | None = None
        offering               = self.all.get(offering_id)
        if offering:
            for it in offering.packages:
                if it.identifier == package_id:
                    result = it
                    break
        return result

@dataclasses.dataclass
class PurchaseResult:
    user_cancelled: bool                = False
    customer_info:  CustomerInfo | None = None

class CommerceBackend:
    '''
    Operations the store manager consumes from the commerce backend. Implementations report
    failures by appending to the error sink and returning an empty result, they should not raise.
    '''
    def fetch_offerings(self, err: ErrorSink) -> Offerings | None:
        handle_not_implemented('fetch_offerings', err)
        return None

    def purchase(self, package: Package, err: ErrorSink) -> PurchaseResult:
        handle_not_implemented('purchase', err)
        return PurchaseResult()

    def restore(self, err: ErrorSink) -> CustomerInfo | None:
        handle_not_implemented('restore', err)
        return None

    def fetch_customer_info(self, err: ErrorSink) -> CustomerInfo | None:
        handle_not_implemented('fetch_customer_info', err)
        return None

    def management_url(self, err: ErrorSink) -> str | None:
        handle_not_implemented('management_url', err)
        return None

def parse_customer_info(response: JSONObject, err: ErrorSink) -> CustomerInfo | None:
    """
    Parse the body of GET /subscribers/{app_user_id} (POST /receipts responds with the same shape).
    An entitlement is active if it has no expiry (lifetime purchase) or it expires after the time
    RevenueCat handled the request.
    """
    result: CustomerInfo | None = None
    subscriber                  = json_dict_require_obj(response, 'subscriber', err)
    if err.has():
        return result

    request_unix_ts_ms: int = int(time.time() * 1000)
    request_date_ms         = response.get('request_date_ms')
    if isinstance(request_date_ms, int) and not isinstance(request_date_ms, bool):
        request_unix_ts_ms = request_date_ms

    entitlements = json_dict_optional_obj(subscriber, 'entitlements', err) or {}
    active: set[str] = set()
    for name, entitlement in entitlements.items():
        if not isinstance(entitlement, dict):
            err.msg_list.append(f'Entitlement "{name}" was not an object: {safe_dump_arbitrary_value_or_type(entitlement)}')
            continue

        expires_date = json_dict_optional_str(entitlement, 'expires_date', err)
        if expires_date is None:
            active.add(name)
            continue

        expiry_unix_ts_ms = base.iso8601_to_unix_ts_ms(expires_date, label=f'Entitlement "{name}" expires_date', err=err)
        if expiry_unix_ts_ms > request_unix_ts_ms:
            active.add(name)

    if err.has():
        return result

    result = CustomerInfo(app_user_id         = typing.cast(str, subscriber.get('original_app_user_id') or ''),
                          active_entitlements = active,
                          management_url      = json_dict_optional_str(subscriber, 'management_url', err),
                          request_unix_ts_ms  = request_unix_ts_ms)
    return result

def parse_offerings(response: JSONObject, err: ErrorSink) -> Offerings | None:
    result: Offerings | None = None
    offerings_arr            = json_dict_require_array(response, 'offerings', err)
    current_offering_id      = json_dict_optional_str(response, 'current_offering_id', err)
    if err.has():
        return result

    result = Offerings(current_offering_id=current_offering_id)
    for index, offering_obj in enumerate(offerings_arr):
        if not isinstance(offering_obj, dict):
            err.msg_list.append(f'Offering at index {index} was not an object: {safe_dump_arbitrary_value_or_type(offering_obj)}')
            continue

        offering             = Offering()
        offering.identifier  = json_dict_require_str(offering_obj, 'identifier', err)
        offering.description = json_dict_optional_str(offering_obj, 'description', err) or ''
        packages_arr         = json_dict_require_array(offering_obj, 'packages', err)
        for package_index, package_obj in enumerate(packages_arr):
            if not isinstance(package_obj, dict):
                err.msg_list.append(f'Package {package_index} of offering "{offering.identifier}" was not an object')
                continue
            offering.packages.append(Package(identifier  = json_dict_require_str(package_obj, 'identifier', err),
                                             product_id  = json_dict_require_str(package_obj, 'platform_product_identifier', err),
                                             offering_id = offering.identifier))
        result.all[offering.identifier] = offering

    if err.has():
        result = None
    return result

class RevenueCatBackend(CommerceBackend):
    '''
    RevenueCat REST client. `app_user_id` is called on every request so that the backend follows
    whichever identity is signed in at the time, RevenueCat is configured to use the same ID as the
    app's authentication provider.
    '''
    api_key:     str
    platform:    str
    base_url:    str
    app_user_id: typing.Callable[[], str | None]
    http:        urllib3.PoolManager

    def __init__(self,
                 api_key:     str,
                 app_user_id: typing.Callable[[], str | None],
                 platform:    str                        = 'ios',
                 base_url:    str                        = REVENUECAT_BASE_URL,
                 http:        urllib3.PoolManager | None = None):
        self.api_key     = api_key
        self.app_user_id = app_user_id
        self.platform    = platform
        self.base_url    = base_url.rstrip('/')
        self.http        = http if http else urllib3.PoolManager(timeout=urllib3.Timeout(connect=REQUEST_TIMEOUT_S, read=REQUEST_TIMEOUT_S),
                                                                 retries=urllib3.Retry(total=2, backoff_factor=0.2))

    def _headers(self) -> dict[str, str]:
        result = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type':  'application/json',
            'X-Platform':    self.platform,
        }
        return result

    def _require_app_user_id(self, err: ErrorSink) -> str:
        result = self.app_user_id() or ''
        if len(result) == 0:
            err.msg_list.append('No app user ID is available to identify the customer to RevenueCat')
        return result

    def _request(self, method: str, path: str, body: JSONObject | None, err: ErrorSink) -> JSONObject | None:
        result: JSONObject | None = None
        url                       = f'{self.base_url}{path}'
        try:
            response = self.http.request(method  = method,
                                         url     = url,
                                         body    = json.dumps(body).encode('utf-8') if body is not None else None,
                                         headers = self._headers())
        except urllib3.exceptions.HTTPError as e:
            err.msg_list.append(f'RevenueCat {method} {path} failed: {e}')
            return result

        if response.status < 200 or response.status >= 300:
            err.msg_list.append(f'RevenueCat {method} {path} returned status {response.status}: {response.data[:200]!r}')
            return result

        try:
            parsed = json.loads(response.data)
        except ValueError as e:
            err.msg_list.append(f'RevenueCat {method} {path} returned invalid JSON: {e}')
            return result

        if isinstance(parsed, dict):
            result = typing.cast(JSONObject, parsed)
        else:
            err.msg_list.append(f'RevenueCat {method} {path} returned non-object JSON: {safe_dump_arbitrary_value_or_type(parsed)}')
        return result

    def _subscriber_path(self, app_user_id: str) -> str:
        result = f'/subscribers/{urllib.parse.quote(app_user_id, safe="")}'
        return result

    def fetch_customer_info(self, err: ErrorSink) -> CustomerInfo | None:
        result: CustomerInfo | None = None
        app_user_id                 = self._require_app_user_id(err)
        if err.has():
            return result

        response = self._request('GET', self._subscriber_path(app_user_id), body=None, err=err)
        if response is not None:
            result = parse_customer_info(response, err)
        return result

    def fetch_offerings(self, err: ErrorSink) -> Offerings | None:
        result: Offerings | None = None
        app_user_id              = self._require_app_user_id(err)
        if err.has():
            return result

        response = self._request('GET', f'{self._subscriber_path(app_user_id)}/offerings', body=None, err=err)
        if response is not None:
            result = parse_offerings(response, err)
        return result

    def purchase(self, package: Package, err: ErrorSink) -> PurchaseResult:
        result = PurchaseResult()
        if len(package.fetch_token) == 0:
            result.user_cancelled = True
            return result

        app_user_id = self._require_app_user_id(err)
        if err.has():
            return result

        log.info(f'Posting receipt (package={package.identifier}, product={package.product_id}, token={base.obfuscate_unless_unsafe(package.fetch_token)})')
        body: JSONObject = {
            'app_user_id': app_user_id,
            'fetch_token': package.fetch_token,
            'product_id':  package.product_id,
        }
        response = self._request('POST', '/receipts', body=body, err=err)
        if response is not None:
            result.customer_info = parse_customer_info(response, err)
        return result

    def restore(self, err: ErrorSink) -> CustomerInfo | None:
        # NOTE: The platform SDK on the device has already synced the user's receipts with
        # RevenueCat when it restored, what's left for us is to re-read the customer so that the
        # entitlements reflect the restored transactions.
        result = self.fetch_customer_info(err)
        return result

    def management_url(self, err: ErrorSink) -> str | None:
        customer_info = self.fetch_customer_info(err)
        result        = customer_info.management_url if customer_info else None
        return result
