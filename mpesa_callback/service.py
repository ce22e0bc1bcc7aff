import logging
from typing import Optional

from .errors import CallbackValidationError
from .models import (
    AUDIT_FAILED,
    AUDIT_PROCESSED,
    AUDIT_RECEIVED,
    STAGE_CLASSIFIED,
    STAGE_NORMALIZED,
    STAGE_PERSISTED,
    STAGE_RECEIVED,
    ReconciliationResult,
    TransactionRecord,
)
from .store import TransactionStore
from .utils import classify_result_code, normalize_callback, utc_now

# Configure logger
logger = logging.getLogger(__name__)


class AuditLog:
    """
    Append-only trail of raw callbacks and their processing stage.

    Recording is best effort: failures are logged and never raised.
    """

    def __init__(self, store, collection: str = 'mpesaLogs', project: str = 'mpesa-callback', enabled: bool = True):
        self.store = store
        self.collection = collection
        self.project = project
        self.enabled = enabled

    def record(self, payload, stage: str) -> Optional[str]:
        if not self.enabled:
            return None

        entry = {
            'data': payload,
            'status': stage,
            'timestamp': utc_now(),
            'project': self.project,
        }
        try:
            return self.store.add(self.collection, entry)
        except Exception as e:
            logger.warning(f'Failed to write {stage} audit entry: {str(e)}', exc_info=True)
            return None


class CallbackReconciler:
    """
    Turns inbound STK callbacks into persisted transaction state.

    A callback moves received -> normalized -> classified -> persisted; an error
    at any stage is audited as failed and re-raised to the caller. Replaying a
    callback overwrites the stored record with identical content (only
    updatedAt moves). Concurrent callbacks for the same CheckoutRequestID are
    not serialized: whichever write lands last wins.
    """

    def __init__(self, transactions: TransactionStore, audit: AuditLog, extended_statuses: bool = False):
        self.transactions = transactions
        self.audit = audit
        self.extended_statuses = extended_statuses

    def process_callback(self, payload) -> ReconciliationResult:
        self.audit.record(payload, AUDIT_RECEIVED)
        stage = STAGE_RECEIVED

        try:
            record = normalize_callback(payload)
            stage = STAGE_NORMALIZED

            record.status = classify_result_code(record.result_code, extended=self.extended_statuses)
            stage = STAGE_CLASSIFIED

            self._upsert(record)
            stage = STAGE_PERSISTED
        except CallbackValidationError as e:
            logger.warning(f'Rejected callback at stage {stage}: {str(e)}')
            self.audit.record(payload, AUDIT_FAILED)
            raise
        except Exception as e:
            logger.error(f'Callback processing failed after stage {stage}: {str(e)}')
            self.audit.record(payload, AUDIT_FAILED)
            raise

        self.audit.record(payload, AUDIT_PROCESSED)
        logger.info(
            f'Transaction processed - '
            f'CheckoutRequestID: {record.checkout_request_id}, '
            f'ResultCode: {record.result_code}, '
            f'Status: {record.status}'
        )
        return ReconciliationResult(
            transaction_id=record.checkout_request_id,
            status=record.status,
            message='Transaction processed successfully',
            stage=stage,
        )

    def _upsert(self, record: TransactionRecord) -> TransactionRecord:
        key = record.checkout_request_id
        existing = self.transactions.get(key)
        if existing is not None:
            record.created_at = existing.created_at
            logger.info(f'Updating existing transaction {key}')
        else:
            logger.info(f'Creating transaction {key}')
        return self.transactions.put(key, record)

    def get_transaction_status(self, checkout_request_id: str) -> Optional[TransactionRecord]:
        return self.transactions.get(checkout_request_id)

    def get_transaction_history(self, phone_number: str, limit: int = 10) -> list[TransactionRecord]:
        return self.transactions.query_by_field(
            'phoneNumber',
            phone_number,
            order_field='createdAt',
            direction='desc',
            limit=limit,
        )
