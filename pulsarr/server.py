import argparse
import hmac
import json
import logging
import secrets
import threading
import uuid
from typing import Any, Dict, List, Optional

from flask import Flask, request
from waitress import serve

from .acquisition import ArrAcquirer
from .approval import ApprovalGate, ApprovalManager
from .arr_api import InstanceManager, MetadataLookup, build_session
from .config import CONFIG_PATH, load_config, section, seed_store, validate_configuration
from .errors import ApprovalNotFound, StorageError
from .evaluators import create_evaluators, get_evaluators_metadata, get_loaded_evaluators
from .logging_config import setup_logging
from .models import CONTENT_TYPES, APPROVAL_STATUSES, ContentItem, RoutingContext
from .notifications import Notifier
from .plugins import PLUGIN_REGISTRY
from .quota import DEFAULT_RETENTION_DAYS, QuotaTracker
from .resolver import DecisionResolver
from .storage import Database

# =========================
# App and global constants
# =========================
app = Flask(__name__)

"""
Runtime configuration (initialised in configure()).
These globals are populated when the server starts or when commands run.
"""
DRY_RUN: bool = True
WEBHOOK_TOKEN: Optional[str] = None
ENFORCE_WEBHOOK_TOKEN: bool = False

SERVER_HOST: str = '0.0.0.0'
SERVER_PORT: int = 12210
SERVER_THREADS: int = 15
SERVER_CONNECTION_LIMIT: int = 500

MAINTENANCE_INTERVAL_MINUTES: int = 60
APPROVAL_CLEANUP_DAYS: int = 30
QUOTA_RETENTION_DAYS: int = DEFAULT_RETENTION_DAYS

store: Optional[Database] = None
evaluators: List = []
resolver: Optional[DecisionResolver] = None
quota_tracker: Optional[QuotaTracker] = None
gate: Optional[ApprovalGate] = None
approvals: Optional[ApprovalManager] = None

_maintenance_stop = threading.Event()


# =========================
# Runtime wiring
# =========================
def configure(cfg: dict, database: Optional[Database] = None) -> dict:
    """Build the store and routing components from a validated config mapping."""
    global DRY_RUN, WEBHOOK_TOKEN, ENFORCE_WEBHOOK_TOKEN
    global SERVER_HOST, SERVER_PORT, SERVER_THREADS, SERVER_CONNECTION_LIMIT
    global MAINTENANCE_INTERVAL_MINUTES, APPROVAL_CLEANUP_DAYS, QUOTA_RETENTION_DAYS
    global store, evaluators, resolver, quota_tracker, gate, approvals

    DRY_RUN = bool(cfg['DRY_RUN'])

    # Webhook
    wcfg = section(cfg, 'WEBHOOK')
    WEBHOOK_TOKEN = wcfg.get('TOKEN')
    ENFORCE_WEBHOOK_TOKEN = bool(WEBHOOK_TOKEN)

    # Server
    scfg = section(cfg, 'SERVER')
    SERVER_HOST = scfg.get('HOST', '0.0.0.0')
    SERVER_PORT = int(scfg.get('PORT', 12210))
    SERVER_THREADS = int(scfg.get('THREADS', 15))
    SERVER_CONNECTION_LIMIT = int(scfg.get('CONNECTION_LIMIT', 500))

    # Maintenance and retention
    acfg = section(cfg, 'APPROVAL')
    MAINTENANCE_INTERVAL_MINUTES = int(section(cfg, 'MAINTENANCE').get('INTERVAL_MINUTES', 60))
    APPROVAL_CLEANUP_DAYS = int(acfg.get('CLEANUP_EXPIRED_DAYS', 30))
    QUOTA_RETENTION_DAYS = int(section(cfg, 'QUOTA').get('RETENTION_DAYS', DEFAULT_RETENTION_DAYS))
    expires_after = acfg.get('EXPIRES_AFTER_HOURS')

    # Store
    store = database or Database(str(cfg['DATABASE_URL']))
    store.create_all()
    seed_store(store, cfg)

    # Routing
    rcfg = section(cfg, 'ROUTING')
    lookup_timeout = float(rcfg.get('LOOKUP_TIMEOUT', 5))
    http = build_session()
    instances = InstanceManager(store, timeout=lookup_timeout, session=http)
    lookup = MetadataLookup(instances, timeout=lookup_timeout)
    evaluators = create_evaluators(store)
    plugins = []
    if rcfg.get('USE_LOOKUP_PLUGINS', False):
        plugins = [cls(store, lookup) for cls in PLUGIN_REGISTRY.values()]
    resolver = DecisionResolver(
        store,
        evaluators,
        lookup=lookup,
        plugins=plugins,
        parallel=bool(rcfg.get('PARALLEL_EVALUATION', False)),
        max_workers=int(rcfg.get('MAX_WORKERS', 4)),
    )

    # Notifiarr
    ncfg = section(cfg, 'NOTIFIARR')
    notifier = Notifier(ncfg.get('API_KEY'), ncfg.get('CHANNEL'), int(ncfg.get('TIMEOUT', 10)), session=http)

    acquirer = ArrAcquirer(instances, dry_run=DRY_RUN)
    quota_tracker = QuotaTracker(store)
    gate = ApprovalGate(store, quota_tracker, acquirer, notifier=notifier,
                        expires_after_hours=int(expires_after) if expires_after else None)
    approvals = ApprovalManager(store, quota_tracker, acquirer, notifier=notifier)
    return cfg


def init_runtime(cfg_path: str = CONFIG_PATH) -> dict:
    """Load configuration and initialise globals/clients."""
    cfg = load_config(cfg_path)
    validate_configuration(cfg)
    return configure(cfg)


# =========================
# Maintenance
# =========================
def run_maintenance() -> Dict[str, int]:
    expired = approvals.expire_sweep()
    removed = approvals.cleanup_expired(APPROVAL_CLEANUP_DAYS)
    usage = quota_tracker.cleanup(QUOTA_RETENTION_DAYS)
    return {'expired': expired, 'approvalsRemoved': removed, 'usageRemoved': usage}


def _maintenance_loop(interval_seconds: float) -> None:
    while not _maintenance_stop.wait(interval_seconds):
        try:
            run_maintenance()
        except StorageError as e:
            logging.error(f"Maintenance run failed: {e}")


def start_maintenance_thread() -> threading.Thread:
    _maintenance_stop.clear()
    thread = threading.Thread(
        target=_maintenance_loop,
        args=(max(1, MAINTENANCE_INTERVAL_MINUTES) * 60,),
        name='pulsarr-maintenance',
        daemon=True,
    )
    thread.start()
    return thread


# =========================
# Flask routes
# =========================
def _authorised(payload: Any = None) -> bool:
    if not ENFORCE_WEBHOOK_TOKEN:
        return True
    provided = (request.headers.get('X-Webhook-Token', '') or '').strip()
    if not provided and isinstance(payload, dict):
        hdrs = payload.get('headers') or {}
        if isinstance(hdrs, dict):
            provided = (hdrs.get('X-Webhook-Token') or hdrs.get('x-webhook-token') or '').strip()
    return bool(provided) and hmac.compare_digest(str(provided), str(WEBHOOK_TOKEN))


def _action_body() -> Optional[dict]:
    """JSON object body of an admin action; empty when absent, None when not an object."""
    body = request.get_json(silent=True)
    if body is None:
        return {}
    return body if isinstance(body, dict) else None


def _int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@app.errorhandler(ApprovalNotFound)
def handle_not_found(e):
    return {'error': str(e)}, 404


@app.errorhandler(StorageError)
def handle_storage_error(e):
    logging.error(f"Storage failure while handling {request.method} {request.path}: {e}")
    return {'error': 'Storage unavailable, retry later'}, 503


@app.before_request
def check_api_token():
    if request.path.startswith('/api/') and not _authorised():
        logging.warning(f"Unauthorized API call to {request.path}")
        return ('Unauthorized', 401)
    return None


@app.route('/health', methods=['GET'])
def health():
    return {'ok': True}, 200


@app.route('/webhook', methods=['POST'])
def handle_webhook():
    correlation_id = str(uuid.uuid4())
    request_data = request.get_json(force=True, silent=True)

    if not _authorised(request_data):
        logging.warning(
            "Unauthorized webhook: missing or invalid token",
            extra={'correlation_id': correlation_id}
        )
        return ('Unauthorized', 401)

    if not isinstance(request_data, dict) or not isinstance(request_data.get('item'), dict) \
            or not isinstance(request_data.get('context'), dict):
        logging.error("Invalid JSON payload", extra={'correlation_id': correlation_id})
        return ('Bad Request', 400)

    try:
        item = ContentItem.from_dict(request_data['item'])
        context = RoutingContext.from_dict(request_data['context'])
    except (TypeError, ValueError) as e:
        logging.error(f"Invalid webhook payload: {e}", extra={'correlation_id': correlation_id})
        return ('Bad Request', 400)

    if context.content_type not in CONTENT_TYPES:
        logging.error(f"Unsupported contentType '{context.content_type}'",
                      extra={'correlation_id': correlation_id})
        return ('Bad Request', 400)

    extra = {'request_id': context.item_key or '', 'correlation_id': correlation_id}
    logging.info(f"Processing: {item.title} ({context.content_type}) user={context.user_name}", extra=extra)

    decisions = resolver.resolve(item, context, extra=extra)
    outcome = gate.process(item, context, decisions, extra=extra)
    logging.info(f"Outcome for '{item.title}': {outcome.status}", extra=extra)
    return {
        'correlationId': correlation_id,
        'decisions': [d.to_dict() for d in decisions],
        'outcome': outcome.to_dict(),
    }, 200


@app.route('/api/approvals', methods=['GET'])
def list_approvals():
    pending = approvals.list_pending(limit=_int_arg('limit', 50), offset=_int_arg('offset', 0))
    return {'approvals': [r.to_dict() for r in pending]}, 200


@app.route('/api/approvals/history', methods=['GET'])
def approval_history():
    status = request.args.get('status')
    if status and status not in APPROVAL_STATUSES:
        return {'error': f"Unknown status '{status}'"}, 400
    found = approvals.history(
        user_id=_int_arg('userId'),
        status=status,
        content_type=request.args.get('contentType'),
        triggered_by=request.args.get('triggeredBy'),
        limit=_int_arg('limit', 50),
        offset=_int_arg('offset', 0),
    )
    return {'approvals': [r.to_dict() for r in found]}, 200


@app.route('/api/approvals/stats', methods=['GET'])
def approval_stats():
    user_id = _int_arg('userId')
    if user_id is not None:
        return {'stats': approvals.user_stats(user_id)}, 200
    return {'stats': approvals.stats()}, 200


@app.route('/api/approvals/<int:request_id>/approve', methods=['POST'])
def approve_request(request_id: int):
    body = _action_body()
    if body is None:
        logging.error(f"Invalid approve body for request {request_id}")
        return ('Bad Request', 400)
    outcome = approvals.approve(request_id, approved_by=body.get('approvedBy'), notes=body.get('notes'))
    return outcome.to_dict(), 200


@app.route('/api/approvals/<int:request_id>/reject', methods=['POST'])
def reject_request(request_id: int):
    body = _action_body()
    if body is None:
        logging.error(f"Invalid reject body for request {request_id}")
        return ('Bad Request', 400)
    outcome = approvals.reject(request_id, rejected_by=body.get('rejectedBy'), reason=body.get('reason'))
    return outcome.to_dict(), 200


@app.route('/api/approvals/<int:request_id>', methods=['DELETE'])
def delete_request(request_id: int):
    approvals.delete(request_id)
    return {'deleted': request_id}, 200


@app.route('/api/quota/<int:user_id>/<content_type>', methods=['GET'])
def quota_status(user_id: int, content_type: str):
    if content_type not in CONTENT_TYPES:
        return {'error': f"Unknown content type '{content_type}'"}, 400
    return quota_tracker.formatted_status(user_id, content_type), 200


@app.route('/api/evaluators', methods=['GET'])
def list_evaluators():
    return {
        'evaluators': get_evaluators_metadata(evaluators),
        'loaded': get_loaded_evaluators(resolver.run_list()),
    }, 200


# =========================
# Main
# =========================
def parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='pulsarr', description='Pulsarr content routing and approval service')
    parser.add_argument('-c', '--config', default=CONFIG_PATH, help='Path to config.yaml')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL (DEBUG, INFO, ...)')
    parser.add_argument('--log-file', default=None, help='Write the JSON log to this file')
    sub = parser.add_subparsers(dest='cmd')

    p_gen = sub.add_parser('gen-token', help='Generate a webhook token')
    p_gen.add_argument('--size', type=int, default=32, help='Token size for secrets.token_urlsafe')

    sub.add_parser('serve', help='Start the webhook server (default)')
    sub.add_parser('maintenance', help='Expire stale approvals and apply retention once')
    sub.add_parser('validate', help='Validate the configuration and exit')
    sub.add_parser('evaluators', help='Print evaluator metadata as JSON')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_cli_args(argv)
    setup_logging(args.log_level, args.log_file)  # Ensure logs work for early failures/CLI

    if args.cmd == 'gen-token':
        print(secrets.token_urlsafe(args.size))
        return 0

    try:
        if args.cmd == 'validate':
            validate_configuration(load_config(args.config))
            return 0

        if args.cmd == 'evaluators':
            print(json.dumps(get_evaluators_metadata(create_evaluators(None)), indent=2))
            return 0

        init_runtime(args.config)

        if args.cmd == 'maintenance':
            result = run_maintenance()
            logging.info(f"Maintenance complete: {result}")
            return 0

        # default: serve
        start_maintenance_thread()
        logging.info(f"Configuration valid. Starting server on {SERVER_HOST}:{SERVER_PORT}")
        serve(
            app,
            host=SERVER_HOST,
            port=SERVER_PORT,
            threads=SERVER_THREADS,
            connection_limit=SERVER_CONNECTION_LIMIT,
        )
    except KeyboardInterrupt:
        return 130
    except SystemExit as e:
        return int(e.code or 1)
    except Exception:
        logging.exception("Fatal error starting server")
        return 1
    finally:
        _maintenance_stop.set()
    return 0
