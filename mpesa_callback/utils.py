from datetime import datetime, timezone
import logging
import re

from .errors import MalformedCallback, MissingField, TypeMismatch
from .models import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_INSUFFICIENT_FUNDS,
    STATUS_SUCCESS,
    STATUS_TIMEOUT,
    TransactionRecord,
)

# Configure logger
logger = logging.getLogger(__name__)

REQUIRED_CALLBACK_FIELDS = ['MerchantRequestID', 'CheckoutRequestID', 'ResultCode']

# CallbackMetadata item Name -> record attribute
METADATA_FIELDS = {
    'Amount': 'amount',
    'MpesaReceiptNumber': 'receipt_number',
    'TransactionDate': 'transaction_date',
    'PhoneNumber': 'phone_number',
    'Balance': 'balance',
}

# Stored as strings regardless of how the processor encodes them
_STRING_METADATA = {'receipt_number', 'transaction_date', 'phone_number'}

# Observed mapping: first match wins, anything unmatched is failed.
RESULT_CODE_STATUSES = (
    (0, STATUS_SUCCESS),
)

# Codes the legacy status table named but never applied (its duplicate key for
# code 1 is ambiguous). Only used when extended statuses are switched on.
EXTENDED_RESULT_CODE_STATUSES = (
    (0, STATUS_SUCCESS),
    (1, STATUS_INSUFFICIENT_FUNDS),
    (1032, STATUS_CANCELLED),
    (1037, STATUS_TIMEOUT),
)


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string (sorts chronologically as text)."""
    return datetime.now(timezone.utc).isoformat()


def is_number(value) -> bool:
    """Validate value is a JSON number (bools excluded)."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _dispatch(result_code: int, table) -> str:
    for code, status in table:
        if result_code == code:
            return status
    return STATUS_FAILED


def classify_result_code(result_code: int, extended: bool = False) -> str:
    """
    Map a processor result code to a transaction status.

    Only 0 maps to success; every other code is failed. Codes with a distinct
    legacy status (1, 1032, 1037) are logged so the open question stays visible.
    """
    status = _dispatch(result_code, RESULT_CODE_STATUSES)
    legacy_status = _dispatch(result_code, EXTENDED_RESULT_CODE_STATUSES)
    if legacy_status != status:
        if extended:
            return legacy_status
        logger.debug(
            f'Result code {result_code} classified as {status} '
            f'(legacy table would give {legacy_status})'
        )
    return status


def get_stk_callback(payload) -> dict:
    """Locate Body.stkCallback in the raw request body."""
    if not isinstance(payload, dict):
        raise MalformedCallback('Invalid request structure: body must be a JSON object')

    body = payload.get('Body')
    if not isinstance(body, dict):
        raise MalformedCallback('Invalid request structure: Missing Body')

    stk_callback = body.get('stkCallback')
    if not isinstance(stk_callback, dict):
        raise MalformedCallback('Invalid request structure: Missing stkCallback')

    return stk_callback


def parse_callback_metadata(items) -> dict:
    """
    Walk CallbackMetadata.Item and map known names onto record attributes.

    Returns:
        Dict of known names under their attribute name, with unknown names kept
        under their original Name inside 'extra'. Last occurrence wins.
    """
    if items is None:
        return {'extra': {}}
    if not isinstance(items, list):
        raise TypeMismatch('CallbackMetadata.Item', 'CallbackMetadata.Item must be a list')

    metadata = {}
    extra = {}
    for item in items:
        if not isinstance(item, dict) or not item.get('Name'):
            logger.warning(f'Skipping malformed callback metadata item: {item!r}')
            continue

        name = item['Name']
        if not isinstance(name, str):
            raise TypeMismatch('CallbackMetadata.Item', 'CallbackMetadata item Name must be a string')
        value = item.get('Value')
        attr = METADATA_FIELDS.get(name)
        if attr is None:
            extra[name] = value
            continue

        if attr in _STRING_METADATA and value is not None:
            value = str(value)
        metadata[attr] = value

    metadata['extra'] = extra
    return metadata


def normalize_callback(payload) -> TransactionRecord:
    """
    Parse a raw STK callback body into a TransactionRecord.

    Raises:
        MalformedCallback: Body.stkCallback is absent
        MissingField: MerchantRequestID, CheckoutRequestID or ResultCode is null/absent
        TypeMismatch: ResultCode is not an integral number, or an identifier or
            metadata Name is not a string
    """
    stk_callback = get_stk_callback(payload)

    missing_fields = [
        field for field in REQUIRED_CALLBACK_FIELDS
        if stk_callback.get(field) is None
    ]
    if missing_fields:
        raise MissingField(
            missing_fields[0],
            f'Missing required fields: {", ".join(missing_fields)}'
        )

    result_code = stk_callback['ResultCode']
    if not is_number(result_code):
        raise TypeMismatch('ResultCode', 'ResultCode must be a number')
    if isinstance(result_code, float):
        if not result_code.is_integer():
            raise TypeMismatch('ResultCode', 'ResultCode must be an integer')
        result_code = int(result_code)

    for field in ('MerchantRequestID', 'CheckoutRequestID'):
        if not isinstance(stk_callback[field], str):
            raise TypeMismatch(field, f'{field} must be a string')

    metadata = {'extra': {}}
    if result_code == 0:
        callback_metadata = stk_callback.get('CallbackMetadata') or {}
        if not isinstance(callback_metadata, dict):
            raise TypeMismatch('CallbackMetadata', 'CallbackMetadata must be an object')
        metadata = parse_callback_metadata(callback_metadata.get('Item'))

    return TransactionRecord(
        checkout_request_id=stk_callback['CheckoutRequestID'],
        merchant_request_id=stk_callback['MerchantRequestID'],
        result_code=result_code,
        result_desc=stk_callback.get('ResultDesc'),
        **metadata,
    )


def format_phone_number(phone: str) -> str | None:
    """
    Normalize a Kenyan MSISDN to 254XXXXXXXXX.

    Accepts 07XXXXXXXX, 7XXXXXXXX/1XXXXXXXX and 254XXXXXXXXX (non-digits are
    stripped). Returns None when the number cannot be normalized.
    """
    if not phone:
        return None

    cleaned = re.sub(r'\D', '', phone)
    if cleaned.startswith('0'):
        cleaned = '254' + cleaned[1:]
    elif cleaned.startswith(('7', '1')):
        cleaned = '254' + cleaned
    elif not cleaned.startswith('254'):
        return None

    if not re.match(r'^254\d{9}$', cleaned):
        return None
    return cleaned


def mask_phone_number(phone: str | None) -> str | None:
    """Mask the middle digits of a phone number, e.g. 254*****4431."""
    if not phone or len(phone) < 8:
        return phone
    return f'{phone[:3]}{"*" * (len(phone) - 7)}{phone[-4:]}'
