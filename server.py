'''
This file is the HTTP layer which declares the functions that serve the routes the host app's UI
shell uses to drive the store manager. These routes are registered onto a Flask application which
enable the endpoints for the server.

The role of this layer is to intercept and sanitize the HTTP request, extracting the JSON into
valid, strongly typed (to Python's best ability) types that can be passed into the store manager
and to wait on the result the manager's control thread produces for it.
'''

import concurrent.futures
import flask
import json
import typing

import base
import plans
from platform_revenuecat import Offerings, Offering, Package
from store_manager import StoreManager, StoreOutcome

class GetJSONFromFlaskRequest:
    json:    dict[str, typing.Any] = {}
    err_msg: str                   = ''

# Key stored in the flask app config dictionary that can be retrieved within a request to get the
# store manager that serves the request.
CONFIG_STORE_MANAGER_KEY     = 'room_store_manager'

# Name of the endpoints exposed on the server
ROUTE_GET_PLAN               = '/get_plan'
ROUTE_GET_OFFERINGS          = '/get_offerings'
ROUTE_PURCHASE               = '/purchase'
ROUTE_RESTORE                = '/restore'
ROUTE_REFRESH                = '/refresh'
ROUTE_MANAGE_SUBSCRIPTIONS   = '/manage_subscriptions'

# How long a request waits on the store manager's control thread before giving up. The job itself
# is not cancelled and still completes in the background.
STORE_RESULT_TIMEOUT_S       = 60

# The object containing routes that you register onto a Flask app to turn it into an app that
# serves the store manager to the host's UI shell.
flask_blueprint = flask.Blueprint('room-store-blueprint', __name__)

def html_bad_response(http_status: int, msg: str | list[str]) -> flask.Response:
    result        = flask.jsonify({ 'status': http_status, 'msg': msg})
    result.status = http_status
    return result

def html_good_response(dict_result: typing.Any) -> flask.Response:
    result = flask.jsonify({ 'status': 200, 'result': dict_result})
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        json_dict = typing.cast(dict[str, typing.Any] | None, json.loads(request.data))
        if not isinstance(json_dict, dict):
            result.err_msg = "JSON failed to be parsed as an object"
        else:
            result.json = json_dict
    except Exception as e:
        result.err_msg = str(e)

    return result

def init(testing_mode: bool, store_manager: StoreManager) -> flask.Flask:
    result                                   = flask.Flask(__name__)
    result.config['TESTING']                 = testing_mode
    result.config[CONFIG_STORE_MANAGER_KEY]  = store_manager
    result.register_blueprint(flask_blueprint)
    return result

def store_manager_from_flask_request_context() -> StoreManager:
    assert CONFIG_STORE_MANAGER_KEY in flask.current_app.config
    result = typing.cast(StoreManager, flask.current_app.config[CONFIG_STORE_MANAGER_KEY])
    return result

def parse_versioned_request(err: base.ErrorSink) -> dict[str, typing.Any]:
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    if len(get.err_msg):
        err.msg_list.append(get.err_msg)
        return {}

    version: int = base.json_dict_require_int(d=get.json, key='version', err=err)
    if not err.has() and version != 0:
        err.msg_list.append(f'Unrecognised version passed: {version}')
    return get.json

def plan_to_dict(plan: plans.SubscriptionPlan) -> dict[str, str | int]:
    result: dict[str, str | int] = {
        'plan':         plan.value,
        'display_name': plans.display_name_of(plan),
        'room_limit':   plans.room_limit_of(plan),
    }
    return result

def offering_to_dict(offering: Offering) -> dict[str, typing.Any]:
    result = {
        'identifier':  offering.identifier,
        'description': offering.description,
        'packages':    [{'identifier':   it.identifier,
                         'product_id':   it.product_id,
                         'display_name': plans.display_name_of(plans.lookup(it.product_id)),
                         'room_limit':   plans.room_limit_for_product(it.product_id)} for it in offering.packages],
    }
    return result

def outcome_to_dict(outcome: StoreOutcome) -> dict[str, typing.Any]:
    result = {'success': outcome.success, 'msg': outcome.msg, 'cancelled': outcome.cancelled}
    return result

def wait_for_store(future: concurrent.futures.Future[typing.Any], err: base.ErrorSink) -> typing.Any:
    result: typing.Any = None
    try:
        result = future.result(timeout=STORE_RESULT_TIMEOUT_S)
    except concurrent.futures.TimeoutError:
        err.msg_list.append(f'Store did not respond within {STORE_RESULT_TIMEOUT_S}s')
    return result

@flask_blueprint.route(ROUTE_GET_PLAN, methods=['POST'])
def get_plan() -> flask.Response:
    err = base.ErrorSink()
    _   = parse_versioned_request(err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    store  = store_manager_from_flask_request_context()
    result = {'version': 0, **plan_to_dict(store.current_plan), 'is_loading': store.is_loading}
    return html_good_response(result)

@flask_blueprint.route(ROUTE_GET_OFFERINGS, methods=['POST'])
def get_offerings() -> flask.Response:
    err     = base.ErrorSink()
    body    = parse_versioned_request(err)
    refresh = body.get('refresh', False)
    if not isinstance(refresh, bool):
        err.msg_list.append('Key "refresh" value was not a bool')
    if err.has():
        return html_bad_response(400, err.msg_list)

    store                       = store_manager_from_flask_request_context()
    offerings: Offerings | None = typing.cast(Offerings | None, store.state.offerings)
    if refresh or offerings is None:
        offerings = wait_for_store(store.request_products(), err)
        if err.has():
            return html_bad_response(504, err.msg_list)

    if offerings is None:
        return html_bad_response(502, 'No offerings are available from the store')

    result = {
        'version':             0,
        'current_offering_id': offerings.current_offering_id,
        'offerings':           [offering_to_dict(it) for it in offerings.all.values()],
    }
    return html_good_response(result)

@flask_blueprint.route(ROUTE_PURCHASE, methods=['POST'])
def purchase() -> flask.Response:
    err         = base.ErrorSink()
    body        = parse_versioned_request(err)
    offering_id = base.json_dict_require_str(d=body, key='offering_id', err=err)
    package_id  = base.json_dict_require_str(d=body, key='package_id',  err=err)
    fetch_token = base.json_dict_optional_str(d=body, key='fetch_token', err=err) or ''
    if err.has():
        return html_bad_response(400, err.msg_list)

    # NOTE: Only packages that the store is currently offering can be purchased, the product ID
    # is taken from the offering rather than trusting the client to send it.
    store                       = store_manager_from_flask_request_context()
    offerings: Offerings | None = typing.cast(Offerings | None, store.state.offerings)
    package: Package | None     = offerings.find_package(offering_id, package_id) if offerings else None
    if package is None:
        return html_bad_response(400, f'Package "{package_id}" is not available in offering "{offering_id}"')

    to_buy  = Package(identifier=package.identifier, product_id=package.product_id, offering_id=package.offering_id, fetch_token=fetch_token)
    outcome = typing.cast(StoreOutcome | None, wait_for_store(store.buy_product(to_buy), err))
    if err.has() or outcome is None:
        return html_bad_response(504, err.msg_list)

    return html_good_response({'version': 0, **outcome_to_dict(outcome), **plan_to_dict(store.current_plan)})

@flask_blueprint.route(ROUTE_RESTORE, methods=['POST'])
def restore() -> flask.Response:
    err = base.ErrorSink()
    _   = parse_versioned_request(err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    store   = store_manager_from_flask_request_context()
    outcome = typing.cast(StoreOutcome | None, wait_for_store(store.restore_purchases(), err))
    if err.has() or outcome is None:
        return html_bad_response(504, err.msg_list)

    return html_good_response({'version': 0, **outcome_to_dict(outcome), **plan_to_dict(store.current_plan)})

@flask_blueprint.route(ROUTE_REFRESH, methods=['POST'])
def refresh() -> flask.Response:
    err = base.ErrorSink()
    _   = parse_versioned_request(err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    store  = store_manager_from_flask_request_context()
    status = wait_for_store(store.update_subscription_status(), err)
    if err.has():
        return html_bad_response(504, err.msg_list)

    result = {'version': 0, 'reconcile_status': status.name if status else None, **plan_to_dict(store.current_plan)}
    return html_good_response(result)

@flask_blueprint.route(ROUTE_MANAGE_SUBSCRIPTIONS, methods=['POST'])
def manage_subscriptions() -> flask.Response:
    err = base.ErrorSink()
    _   = parse_versioned_request(err)
    if err.has():
        return html_bad_response(400, err.msg_list)

    # NOTE: Fire-and-forget, the launcher opens the page on the host's machine
    store = store_manager_from_flask_request_context()
    _     = store.manage_subscriptions()
    return html_good_response({'version': 0})
