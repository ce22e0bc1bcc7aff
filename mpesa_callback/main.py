from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
import time

from flask import Blueprint, Flask, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from . import __version__
from .config import Settings
from .errors import CallbackValidationError
from .metrics import RequestMetrics
from .service import AuditLog, CallbackReconciler
from .store import TransactionStore, create_document_store
from .utils import format_phone_number, mask_phone_number

# Configure logging
logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 100

mpesa = Blueprint('mpesa', __name__, url_prefix='/api/mpesa')
api = Blueprint('api', __name__, url_prefix='/api')


@dataclass
class ServiceContext:
    """Process-scoped collaborators shared by every request."""
    settings: Settings
    store: object
    transactions: TransactionStore
    audit: AuditLog
    reconciler: CallbackReconciler
    metrics: RequestMetrics


def get_context() -> ServiceContext:
    return current_app.extensions['mpesa_callback']


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_response(data=None, message: str = 'Success', status_code: int = 200):
    body = {
        'success': True,
        'message': message,
        'timestamp': _timestamp(),
    }
    if data is not None:
        body['data'] = data
    return jsonify(body), status_code


def error_response(message: str = 'Internal server error', status_code: int = 500, data=None):
    body = {
        'success': False,
        'error': message,
        'timestamp': _timestamp(),
    }
    if data is not None:
        body['data'] = data
    return jsonify(body), status_code


# ============================================================================
# M-Pesa routes
# ============================================================================

@mpesa.route('/callback', methods=['POST'])
def receive_callback():
    """
    Receive an STK push result callback from M-Pesa.

    Expected JSON schema:
    {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "string",
                "CheckoutRequestID": "string",
                "ResultCode": number,
                "ResultDesc": "string",
                "CallbackMetadata": {
                    "Item": [{"Name": "string", "Value": string | number}]
                }
            }
        }
    }
    """
    data = request.get_json(silent=True)
    if data is None:
        logger.warning('Received callback with no JSON data')
        return error_response('Request body is required', 400)

    logger.info(f'Callback received from {request.remote_addr}')

    try:
        result = get_context().reconciler.process_callback(data)
    except CallbackValidationError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.error(f'Callback processing failed: {str(e)}', exc_info=True)
        return error_response('Failed to process callback', 500)

    return success_response(
        {
            'transactionId': result.transaction_id,
            'status': result.status,
            'processed': True,
        },
        result.message,
    )


@mpesa.route('/transaction/<checkout_request_id>', methods=['GET'])
def get_transaction_status(checkout_request_id):
    """Look up a transaction by its CheckoutRequestID."""
    if not checkout_request_id.strip():
        return error_response('CheckoutRequestID must be a valid string', 400)

    logger.info(f'Transaction status requested for {checkout_request_id}')

    try:
        transaction = get_context().reconciler.get_transaction_status(checkout_request_id)
    except Exception as e:
        logger.error(
            f'Transaction status query failed for {checkout_request_id}: {str(e)}',
            exc_info=True
        )
        return error_response('Failed to get transaction status', 500)

    if transaction is None:
        return error_response('Transaction not found', 404)

    return success_response(
        {
            'checkoutRequestID': transaction.checkout_request_id,
            'status': transaction.status,
            'resultCode': transaction.result_code,
            'amount': transaction.amount,
            'receiptNumber': transaction.receipt_number,
            'phoneNumber': transaction.phone_number,
            'timestamp': transaction.created_at,
            'updatedAt': transaction.updated_at,
        },
        'Transaction status retrieved',
    )


def parse_limit(raw_limit, default: int) -> tuple[int | None, str | None]:
    """
    Parse the history page size.

    Returns:
        Tuple of (limit, error_message); limit is None when invalid
    """
    if raw_limit is None:
        return default, None
    try:
        limit = int(raw_limit)
    except (TypeError, ValueError):
        limit = 0
    if limit < 1 or limit > MAX_HISTORY_LIMIT:
        return None, f'Limit must be a number between 1 and {MAX_HISTORY_LIMIT}'
    return limit, None


@mpesa.route('/history/<phone_number>', methods=['GET'])
def get_transaction_history(phone_number):
    """Most recent transactions for a phone number, newest first."""
    formatted_phone = format_phone_number(phone_number)
    if not formatted_phone:
        return error_response('Phone number must be in format 254XXXXXXXXX', 400)

    context = get_context()
    limit, error_message = parse_limit(
        request.args.get('limit'),
        context.settings.history_default_limit,
    )
    if error_message:
        return error_response(error_message, 400)

    masked_phone = mask_phone_number(formatted_phone)
    logger.info(f'Transaction history requested for {masked_phone} limit={limit}')

    try:
        transactions = context.reconciler.get_transaction_history(formatted_phone, limit)
    except Exception as e:
        logger.error(f'Transaction history query failed for {masked_phone}: {str(e)}', exc_info=True)
        return error_response('Failed to get transaction history', 500)

    sanitized = []
    for transaction in transactions:
        document = transaction.to_document()
        document['phoneNumber'] = mask_phone_number(transaction.phone_number or '')
        sanitized.append(document)

    return success_response(
        {
            'phoneNumber': masked_phone,
            'count': len(sanitized),
            'transactions': sanitized,
        },
        'Transaction history retrieved',
    )


def _health():
    context = get_context()
    store_available = context.transactions.ping()
    health = {
        'service': 'M-Pesa Callback Service',
        'status': 'healthy' if store_available else 'degraded',
        'version': __version__,
        'store': 'connected' if store_available else 'disconnected',
        'metrics': context.metrics.snapshot(),
    }
    if store_available:
        return success_response(health, 'Service is healthy')
    return error_response('Service is degraded', 503, data=health)


@mpesa.route('/health', methods=['GET'])
def mpesa_health():
    return _health()


# ============================================================================
# API root
# ============================================================================

@api.route('', methods=['GET'])
@api.route('/', methods=['GET'])
def api_info():
    info = {
        'name': 'M-Pesa Callback API',
        'version': __version__,
        'description': 'M-Pesa STK push callback processing service',
        'endpoints': {
            'callback': 'POST /api/mpesa/callback',
            'transactionStatus': 'GET /api/mpesa/transaction/<checkoutRequestID>',
            'transactionHistory': 'GET /api/mpesa/history/<phoneNumber>',
            'health': 'GET /api/mpesa/health',
        },
    }
    return success_response(info, 'API Information')


@api.route('/health', methods=['GET'])
def api_health():
    return _health()


# ============================================================================
# App factory
# ============================================================================

def create_app(settings: Settings | None = None, store=None) -> Flask:
    """
    Build the Flask app and its process-scoped collaborators.

    Args:
        settings: Service settings (read from the environment when omitted)
        store: Document store to use instead of the configured backend
    """
    settings = settings or Settings.from_env()
    store = store if store is not None else create_document_store(settings)

    transactions = TransactionStore(store, settings.transactions_collection)
    audit = AuditLog(
        store,
        settings.logs_collection,
        project=settings.project_name,
        enabled=settings.enable_callback_logging,
    )
    reconciler = CallbackReconciler(
        transactions,
        audit,
        extended_statuses=settings.extended_statuses,
    )

    app = Flask(__name__)
    app.extensions['mpesa_callback'] = ServiceContext(
        settings=settings,
        store=store,
        transactions=transactions,
        audit=audit,
        reconciler=reconciler,
        metrics=RequestMetrics(),
    )
    app.register_blueprint(mpesa)
    app.register_blueprint(api)

    @app.before_request
    def start_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def log_request(response):
        started = g.get('request_started')
        duration_ms = (time.perf_counter() - started) * 1000 if started else 0.0
        get_context().metrics.record_request(request.path, response.status_code)
        logger.info(
            f'{request.method} {request.path} {response.status_code} {duration_ms:.1f}ms'
        )
        response.headers['X-API-Version'] = '1.0'
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        if e.code == 404:
            return error_response(f'Not Found - {request.path}', 404)
        return error_response(e.description or e.name, e.code or 500)

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        logger.error(f'Unhandled error on {request.method} {request.path}: {str(e)}', exc_info=True)
        return error_response('Internal server error', 500)

    logger.info(
        f'M-Pesa callback service configured - backend={settings.store_backend}, '
        f'transactions={settings.transactions_collection}, logs={settings.logs_collection}, '
        f'audit={"on" if settings.enable_callback_logging else "off"}'
    )
    return app


def main():
    settings = Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)
    app = create_app(settings)
    app.run(host='0.0.0.0', port=settings.port, threaded=True)


if __name__ == "__main__":
    main()
