import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() not in ('0', 'false', 'no', 'off')


def get_database_dsn() -> str | None:
    """Return DATABASE_URL if set, otherwise None (connection falls back to POSTGRES_* vars)."""
    return os.getenv('DATABASE_URL') or None


def get_postgres_params() -> dict:
    return {
        'host': os.getenv('POSTGRES_HOST', 'postgres'),
        'port': int(os.getenv('POSTGRES_PORT', '5432')),
        'dbname': os.getenv('POSTGRES_DB', 'mpesa'),
        'user': os.getenv('POSTGRES_USER', 'mpesa'),
        'password': os.getenv('POSTGRES_PASSWORD', 'mpesa'),
    }


@dataclass
class Settings:
    port: int = 5000
    log_level: str = 'INFO'
    project_name: str = 'mpesa-callback'
    store_backend: str = 'postgres'
    database_url: str | None = None
    postgres: dict = field(default_factory=dict)
    transactions_collection: str = 'mpesaTransactions'
    logs_collection: str = 'mpesaLogs'
    enable_callback_logging: bool = True
    extended_statuses: bool = False
    history_default_limit: int = 10

    @classmethod
    def from_env(cls) -> 'Settings':
        """
        Build settings from environment variables (a local .env file is loaded on import).

        Raises:
            ValueError: If STORE_BACKEND is not one of postgres/memory or a numeric
                variable cannot be parsed
        """
        backend = os.getenv('STORE_BACKEND', 'postgres').strip().lower()
        if backend not in ('postgres', 'memory'):
            raise ValueError(f'Unsupported STORE_BACKEND: {backend}')

        return cls(
            port=int(os.getenv('PORT', '5000')),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            project_name=os.getenv('PROJECT_NAME', 'mpesa-callback'),
            store_backend=backend,
            database_url=get_database_dsn(),
            postgres=get_postgres_params(),
            transactions_collection=os.getenv('TRANSACTIONS_COLLECTION', 'mpesaTransactions'),
            logs_collection=os.getenv('LOGS_COLLECTION', 'mpesaLogs'),
            enable_callback_logging=_env_flag('ENABLE_CALLBACK_LOGGING', True),
            extended_statuses=_env_flag('MPESA_EXTENDED_STATUSES', False),
            history_default_limit=int(os.getenv('HISTORY_DEFAULT_LIMIT', '10')),
        )
