'''
Main entry point for the Room Store. This runs the necessary setup code like configuring logging,
opening the profile store and connecting to the commerce backend before handing over control-flow
to Flask which serves the store manager to the host app's UI shell.

This application has command line options that must be specified as environment variables (or an
.INI file pointed to by an environment variable) because it runs directly as a flask app (in a dev
environment) and it can also be mounted by a WSGI server, neither of which give us a way to forward
command line arguments to the underlying application.
'''

import pathlib
import os
import flask
import logging
import logging.handlers
import configparser
import sys
import dataclasses

import base
import notify
import platform_revenuecat
import profiles
import server
import store_manager

log                                                = logging.Logger('MAIN')
webhook_loggers: list[base.AsyncWebhookLogHandler] = []

PROFILE_STORE_SQLITE:   str = 'sqlite'
PROFILE_STORE_FIREBASE: str = 'firebase'

@dataclasses.dataclass
class LogWebhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:               str              = ''
    db_path:                str              = ''
    db_path_is_uri:         bool             = False
    log_path:               str              = ''
    unsafe_logging:         bool             = False
    identity:               str              = ''
    profile_store:          str              = PROFILE_STORE_SQLITE

    revenuecat_api_key:     str              = ''
    revenuecat_platform:    str              = 'ios'
    revenuecat_base_url:    str              = platform_revenuecat.REVENUECAT_BASE_URL

    firebase_database_url:  str              = ''
    firebase_auth_token:    str              = ''

    log_webhooks:           list[LogWebhook] = dataclasses.field(default_factory=list)

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('ROOM_STORE_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser = configparser.ConfigParser()
        _          = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                          = base_section.get(option='db_path',               fallback='')
            result.db_path_is_uri                   = base_section.getboolean(option='db_path_is_uri', fallback=False)
            result.log_path                         = base_section.get(option='log_path',              fallback='')
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging', fallback=False)
            result.identity                         = base_section.get(option='identity',              fallback='')
            result.profile_store                    = base_section.get(option='profile_store',         fallback=PROFILE_STORE_SQLITE)

        if 'revenuecat' in ini_parser:
            revenuecat_section: configparser.SectionProxy = ini_parser['revenuecat']
            result.revenuecat_api_key                     = revenuecat_section.get(option='api_key',  fallback='')
            result.revenuecat_platform                    = revenuecat_section.get(option='platform', fallback=result.revenuecat_platform)
            result.revenuecat_base_url                    = revenuecat_section.get(option='base_url', fallback=result.revenuecat_base_url)

        if 'firebase' in ini_parser:
            firebase_section: configparser.SectionProxy = ini_parser['firebase']
            result.firebase_database_url                 = firebase_section.get(option='database_url', fallback='')
            result.firebase_auth_token                   = firebase_section.get(option='auth_token',   fallback='')

        webhook_index = 0
        while True:
            webhook_label: str = f'log_webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_enabled: bool | None               = webhook_section.getboolean('enabled')
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'name'")
            if webhook_url is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'url'")
            if webhook_enabled is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'enabled'")

            if webhook_name is not None and webhook_url is not None and webhook_enabled is not None:
                result.log_webhooks.append(LogWebhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))
            webhook_index += 1

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path               = os.getenv('ROOM_STORE_DB_PATH',                      result.db_path)
    result.db_path_is_uri        = base.os_get_boolean_env('ROOM_STORE_DB_PATH_IS_URI', result.db_path_is_uri)
    result.log_path              = os.getenv('ROOM_STORE_LOG_PATH',                     result.log_path)
    result.unsafe_logging        = base.os_get_boolean_env('ROOM_STORE_UNSAFE_LOGGING', result.unsafe_logging)
    result.identity              = os.getenv('ROOM_STORE_IDENTITY',                     result.identity)
    result.profile_store         = os.getenv('ROOM_STORE_PROFILE_STORE',                result.profile_store)
    result.revenuecat_api_key    = os.getenv('ROOM_STORE_REVENUECAT_API_KEY',           result.revenuecat_api_key)
    result.revenuecat_platform   = os.getenv('ROOM_STORE_REVENUECAT_PLATFORM',          result.revenuecat_platform)
    result.revenuecat_base_url   = os.getenv('ROOM_STORE_REVENUECAT_BASE_URL',          result.revenuecat_base_url)
    result.firebase_database_url = os.getenv('ROOM_STORE_FIREBASE_DATABASE_URL',        result.firebase_database_url)
    result.firebase_auth_token   = os.getenv('ROOM_STORE_FIREBASE_AUTH_TOKEN',          result.firebase_auth_token)

    if len(result.revenuecat_api_key) == 0:
        err.msg_list.append('RevenueCat api_key was not specified')

    if result.revenuecat_platform not in ('ios', 'android', 'amazon', 'macos', 'uikitformac', 'stripe'):
        err.msg_list.append(f'RevenueCat platform "{result.revenuecat_platform}" is not recognised')

    if result.profile_store == PROFILE_STORE_SQLITE:
        if len(result.db_path) == 0:
            err.msg_list.append('Profile store is sqlite but db_path was not specified')
    elif result.profile_store == PROFILE_STORE_FIREBASE:
        if len(result.firebase_database_url) == 0:
            err.msg_list.append('Profile store is firebase but database_url was not specified')
    else:
        err.msg_list.append(f'Unrecognised profile store "{result.profile_store}", expected {PROFILE_STORE_SQLITE} or {PROFILE_STORE_FIREBASE}')

    if len(result.log_path) == 0:
        result.log_path = 'room-store.log'

    return result

def entry_point() -> flask.Flask:
    loggers: list[logging.Logger] = [log, store_manager.log, platform_revenuecat.log, profiles.log, notify.log]
    log_formatter                 = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')

    # NOTE: Setup console logger
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    for it in loggers:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err                     = base.ErrorSink()
    parsed_args: ParsedArgs = parse_args(err)
    base.UNSAFE_LOGGING     = parsed_args.unsafe_logging
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + err.build())
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in loggers:
        it.addHandler(file_logger)

    # NOTE: Equip the webhook loggers if they are configured
    for webhook in parsed_args.log_webhooks:
        if webhook.enabled:
            webhook_logger = base.AsyncWebhookLogHandler(webhook_url=webhook.url, display_name=webhook.name)
            webhook_logger.setLevel(logging.WARNING)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for it in loggers:
                it.addHandler(webhook_logger)

    # NOTE: Open the profile store
    profile_store: profiles.ProfileStore | None = None
    if parsed_args.profile_store == PROFILE_STORE_SQLITE:
        if not parsed_args.db_path_is_uri:
            try:
                pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
                sys.exit(1)

        db: profiles.SetupDBResult = profiles.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
        if err.has():
            log.error(err.build())
            sys.exit(1)

        # NOTE: Each store operation opens its own connection, we only needed this one to create
        # the tables.
        assert db.sql_conn
        db.sql_conn.close()
        profile_store = profiles.SQLiteProfileStore(db_path=parsed_args.db_path, uri=parsed_args.db_path_is_uri)
    else:
        profile_store = profiles.FirebaseProfileStore(database_url=parsed_args.firebase_database_url, auth_token=parsed_args.firebase_auth_token)

    # NOTE: Wire up the store manager, which immediately begins fetching offerings and the
    # customer's entitlements on its control thread
    identity = store_manager.StaticIdentityProvider(parsed_args.identity if len(parsed_args.identity) else None)
    commerce = platform_revenuecat.RevenueCatBackend(api_key     = parsed_args.revenuecat_api_key,
                                                     app_user_id = identity.current_identity,
                                                     platform    = parsed_args.revenuecat_platform,
                                                     base_url    = parsed_args.revenuecat_base_url)
    manager  = store_manager.StoreManager(commerce      = commerce,
                                          profiles      = profile_store,
                                          identity      = identity,
                                          notifications = notify.NotificationCenter())

    _ = manager.notifications.subscribe(notify.TOPIC_SUBSCRIPTION_UPDATED,
                                        lambda topic, payload: log.info(f'{topic}: plan={payload["plan"]}, limit={payload["limit"]}'))

    log.info(f'Room store started (profile store={parsed_args.profile_store}, platform={parsed_args.revenuecat_platform}, identity={base.obfuscate_unless_unsafe(parsed_args.identity) or "<none>"})')
    result = server.init(testing_mode=False, store_manager=manager)
    return result

# Flask entry point
flask_app: flask.Flask = entry_point()
