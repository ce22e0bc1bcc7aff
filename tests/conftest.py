import pytest

from mpesa_callback.config import Settings
from mpesa_callback.main import create_app
from mpesa_callback.service import AuditLog, CallbackReconciler
from mpesa_callback.store import MemoryDocumentStore, TransactionStore
from tests.helpers import LOGS, TRANSACTIONS


@pytest.fixture
def memory_store():
    return MemoryDocumentStore()


@pytest.fixture
def transactions(memory_store):
    return TransactionStore(memory_store, TRANSACTIONS)


@pytest.fixture
def audit(memory_store):
    return AuditLog(memory_store, LOGS, project='test-project')


@pytest.fixture
def reconciler(transactions, audit):
    return CallbackReconciler(transactions, audit)


@pytest.fixture
def settings():
    return Settings(store_backend='memory')


@pytest.fixture
def app(settings, memory_store):
    app = create_app(settings, store=memory_store)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
