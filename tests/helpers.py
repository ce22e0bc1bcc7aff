from mpesa_callback.store import MemoryDocumentStore

TRANSACTIONS = 'mpesaTransactions'
LOGS = 'mpesaLogs'


def make_callback(
    checkout_request_id='ws_CO_191220191020363925',
    result_code=0,
    items=None,
    merchant_request_id='29115-34620561-1',
    result_desc='The service request is processed successfully.',
):
    """Build an STK callback body; CallbackMetadata is only added when items is given."""
    stk_callback = {
        'MerchantRequestID': merchant_request_id,
        'CheckoutRequestID': checkout_request_id,
        'ResultCode': result_code,
        'ResultDesc': result_desc,
    }
    if items is not None:
        stk_callback['CallbackMetadata'] = {'Item': items}
    return {'Body': {'stkCallback': stk_callback}}


def success_items(amount=1, receipt='NLJ7RT61SV', phone=254708374149, date=20191219102115):
    return [
        {'Name': 'Amount', 'Value': amount},
        {'Name': 'MpesaReceiptNumber', 'Value': receipt},
        {'Name': 'TransactionDate', 'Value': date},
        {'Name': 'PhoneNumber', 'Value': phone},
    ]


class FailingTransactionsStore(MemoryDocumentStore):
    """Memory store whose transactions collection is unreachable."""

    def get(self, collection, key):
        if collection == TRANSACTIONS:
            raise ConnectionError('document store unreachable')
        return super().get(collection, key)


class FailingAuditStore(MemoryDocumentStore):
    def add(self, collection, document):
        raise ConnectionError('audit collection unreachable')
