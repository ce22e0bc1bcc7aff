import pytest

from mpesa_callback.errors import MalformedCallback, MissingField, StoreUnavailable
from mpesa_callback.models import STAGE_PERSISTED
from mpesa_callback.service import AuditLog, CallbackReconciler
from mpesa_callback.store import TransactionStore
from tests.helpers import (
    LOGS,
    TRANSACTIONS,
    FailingAuditStore,
    FailingTransactionsStore,
    make_callback,
    success_items,
)


def audit_stages(store):
    return [entry['status'] for entry in store.all(LOGS)]


def test_successful_callback_is_persisted(reconciler, memory_store):
    payload = make_callback(
        checkout_request_id='C1',
        merchant_request_id='M1',
        result_desc='ok',
        items=[
            {'Name': 'Amount', 'Value': 100},
            {'Name': 'MpesaReceiptNumber', 'Value': 'R1'},
        ],
    )

    result = reconciler.process_callback(payload)

    assert result.transaction_id == 'C1'
    assert result.status == 'success'
    assert result.message == 'Transaction processed successfully'
    assert result.stage == STAGE_PERSISTED

    document = memory_store.get(TRANSACTIONS, 'C1')
    assert document['checkoutRequestID'] == 'C1'
    assert document['merchantRequestID'] == 'M1'
    assert document['resultCode'] == 0
    assert document['resultDesc'] == 'ok'
    assert document['status'] == 'success'
    assert document['amount'] == 100
    assert document['receiptNumber'] == 'R1'
    assert 'phoneNumber' not in document
    assert document['createdAt'] and document['updatedAt']


def test_audit_trail_records_received_then_processed(reconciler, memory_store):
    payload = make_callback(items=success_items())

    reconciler.process_callback(payload)

    entries = memory_store.all(LOGS)
    assert audit_stages(memory_store) == ['received', 'processed']
    assert all(entry['data'] == payload for entry in entries)
    assert all(entry['project'] == 'test-project' for entry in entries)


def test_cancelled_callback_uses_observed_failed_status(reconciler, memory_store):
    # The legacy status table names 1032 "cancelled" but the applied mapping
    # sends every non-zero code to failed; this pins the applied behaviour.
    payload = make_callback(checkout_request_id='C2', result_code=1032, result_desc='Request cancelled by user')

    result = reconciler.process_callback(payload)

    document = memory_store.get(TRANSACTIONS, 'C2')
    assert result.status == 'failed'
    assert document['status'] == 'failed'
    assert document['resultCode'] == 1032
    for key in ('amount', 'receiptNumber', 'transactionDate', 'phoneNumber'):
        assert key not in document


def test_extended_statuses_opt_in(transactions, audit, memory_store):
    reconciler = CallbackReconciler(transactions, audit, extended_statuses=True)

    reconciler.process_callback(make_callback(checkout_request_id='C3', result_code=1037))

    assert memory_store.get(TRANSACTIONS, 'C3')['status'] == 'timeout'


def test_replaying_callback_is_idempotent(reconciler, transactions, monkeypatch):
    times = iter(['2024-05-01T10:00:00+00:00', '2024-05-01T10:00:05+00:00'])
    monkeypatch.setattr('mpesa_callback.store.utc_now', lambda: next(times))
    payload = make_callback(items=success_items())

    reconciler.process_callback(payload)
    first = transactions.get('ws_CO_191220191020363925')
    reconciler.process_callback(payload)
    second = transactions.get('ws_CO_191220191020363925')

    assert first.content() == second.content()
    assert second.created_at == first.created_at
    assert second.updated_at == '2024-05-01T10:00:05+00:00'
    assert first.updated_at == '2024-05-01T10:00:00+00:00'


def test_later_callback_overwrites_instead_of_merging(reconciler, transactions):
    reconciler.process_callback(make_callback(checkout_request_id='C4', items=success_items(amount=50)))
    reconciler.process_callback(make_callback(checkout_request_id='C4', result_code=1, result_desc='Insufficient'))

    record = transactions.get('C4')
    assert record.status == 'failed'
    assert record.result_desc == 'Insufficient'
    assert record.amount is None
    assert record.phone_number is None


def test_round_trip_by_checkout_request_id(reconciler):
    reconciler.process_callback(make_callback(checkout_request_id='C5', items=success_items(amount=250, receipt='R5')))

    record = reconciler.get_transaction_status('C5')

    assert record.status == 'success'
    assert record.amount == 250
    assert record.receipt_number == 'R5'
    assert record.phone_number == '254708374149'


def test_unknown_transaction_status_is_none(reconciler):
    assert reconciler.get_transaction_status('missing') is None


def test_validation_failure_is_audited_and_raised(reconciler, memory_store):
    payload = make_callback()
    del payload['Body']['stkCallback']['CheckoutRequestID']

    with pytest.raises(MissingField) as exc_info:
        reconciler.process_callback(payload)

    assert exc_info.value.field == 'CheckoutRequestID'
    assert audit_stages(memory_store) == ['received', 'failed']
    assert memory_store.all(TRANSACTIONS) == []


def test_malformed_callback_is_audited_and_raised(reconciler, memory_store):
    with pytest.raises(MalformedCallback):
        reconciler.process_callback({'Body': {}})

    assert audit_stages(memory_store) == ['received', 'failed']


def test_store_failure_propagates_and_is_audited():
    store = FailingTransactionsStore()
    reconciler = CallbackReconciler(TransactionStore(store, TRANSACTIONS), AuditLog(store, LOGS))

    with pytest.raises(StoreUnavailable) as exc_info:
        reconciler.process_callback(make_callback(items=success_items()))

    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert audit_stages(store) == ['received', 'failed']


def test_audit_failures_never_change_the_outcome():
    store = FailingAuditStore()
    reconciler = CallbackReconciler(TransactionStore(store, TRANSACTIONS), AuditLog(store, LOGS))

    result = reconciler.process_callback(make_callback(checkout_request_id='C6', items=success_items()))

    assert result.status == 'success'
    assert store.get(TRANSACTIONS, 'C6')['status'] == 'success'


def test_audit_failures_do_not_mask_validation_errors():
    store = FailingAuditStore()
    reconciler = CallbackReconciler(TransactionStore(store, TRANSACTIONS), AuditLog(store, LOGS))

    with pytest.raises(MalformedCallback):
        reconciler.process_callback({})


def test_disabled_audit_log_writes_nothing(transactions, memory_store):
    reconciler = CallbackReconciler(transactions, AuditLog(memory_store, LOGS, enabled=False))

    reconciler.process_callback(make_callback(items=success_items()))

    assert memory_store.all(LOGS) == []


def test_history_is_newest_first_and_limited(reconciler, monkeypatch):
    times = iter([f'2024-05-0{day}T00:00:00+00:00' for day in range(1, 5)])
    monkeypatch.setattr('mpesa_callback.store.utc_now', lambda: next(times))
    for checkout_request_id in ('H1', 'H2', 'H3'):
        reconciler.process_callback(make_callback(checkout_request_id=checkout_request_id, items=success_items()))
    reconciler.process_callback(
        make_callback(checkout_request_id='OTHER', items=success_items(phone=254711111111))
    )

    history = reconciler.get_transaction_history('254708374149', limit=2)

    assert [r.checkout_request_id for r in history] == ['H3', 'H2']


def test_history_for_unknown_phone_is_empty(reconciler):
    assert reconciler.get_transaction_history('254799999999') == []
