"""
Finance System Module

Wires storage, audit trail, logging and the loan and credit card managers
from a single configuration.
"""

from typing import Optional

from .audit import AuditTrail
from .card_manager import CreditCardManager
from .config import FinanceCoreConfig, get_config
from .loans import LoanManager
from .logging_config import setup_logging
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface

MEMORY_URL = "memory://"


def create_storage(database_url: str) -> StorageInterface:
    """
    Storage backend for a database URL

    ``memory://`` selects the in-memory backend, ``sqlite:///path`` a
    SQLite file (``sqlite:///`` with no path is an in-memory SQLite database).
    """
    if database_url == MEMORY_URL:
        return InMemoryStorage()
    return SQLiteStorage.from_url(database_url)


class FinanceSystem:
    """Loan and credit card engine with all components initialized"""

    def __init__(self, config: Optional[FinanceCoreConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.logger = setup_logging(
            level=self.config.log_level,
            log_format=self.config.log_format,
            log_file=self.config.log_file
        )

        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.config)
        self.card_manager = CreditCardManager(self.storage, self.audit_trail, self.config)

    def close(self) -> None:
        self.storage.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
