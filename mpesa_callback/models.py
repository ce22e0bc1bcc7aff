from dataclasses import dataclass, field
from typing import Any, Optional

STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'
STATUS_TIMEOUT = 'timeout'
STATUS_INSUFFICIENT_FUNDS = 'insufficient_funds'

# Processing stages of a single callback
STAGE_RECEIVED = 'received'
STAGE_NORMALIZED = 'normalized'
STAGE_CLASSIFIED = 'classified'
STAGE_PERSISTED = 'persisted'
STAGE_FAILED = 'failed'

# Audit trail markers
AUDIT_RECEIVED = 'received'
AUDIT_PROCESSED = 'processed'
AUDIT_FAILED = 'failed'

# Document key -> attribute name
_DOCUMENT_FIELDS = {
    'checkoutRequestID': 'checkout_request_id',
    'merchantRequestID': 'merchant_request_id',
    'resultCode': 'result_code',
    'resultDesc': 'result_desc',
    'status': 'status',
    'amount': 'amount',
    'receiptNumber': 'receipt_number',
    'transactionDate': 'transaction_date',
    'phoneNumber': 'phone_number',
    'balance': 'balance',
    'createdAt': 'created_at',
    'updatedAt': 'updated_at',
}


@dataclass
class TransactionRecord:
    """
    Canonical transaction state, keyed by the processor's CheckoutRequestID.

    Metadata fields (amount, receipt_number, transaction_date, phone_number,
    balance) are only ever set for successful payments. Metadata names the
    normalizer does not recognise are kept in `extra` under their original key.
    """
    checkout_request_id: str
    merchant_request_id: str
    result_code: int
    result_desc: Optional[str] = None
    status: Optional[str] = None
    amount: Any = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    balance: Any = None
    extra: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_document(self) -> dict:
        document = dict(self.extra)
        for key, attr in _DOCUMENT_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                document[key] = value
        return document

    @classmethod
    def from_document(cls, document: dict) -> 'TransactionRecord':
        values = {}
        extra = {}
        for key, value in document.items():
            if key in _DOCUMENT_FIELDS:
                values[_DOCUMENT_FIELDS[key]] = value
            elif key != 'id':
                extra[key] = value
        return cls(extra=extra, **values)

    def content(self) -> dict:
        """Document without the server-assigned timestamps."""
        document = self.to_document()
        document.pop('createdAt', None)
        document.pop('updatedAt', None)
        return document


@dataclass
class ReconciliationResult:
    transaction_id: str
    status: str
    message: str
    stage: str = STAGE_PERSISTED
