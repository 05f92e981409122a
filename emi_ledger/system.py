"""
EMI ledger system wiring

Builds every component on one shared storage backend.
"""

from decimal import Decimal
from typing import Optional

from .audit import AuditTrail
from .config import EmiLedgerConfig, get_config
from .currency import Currency
from .customers import CustomerAggregateStore
from .events import EventDispatcher
from .exceptions import ConfigurationError
from .ledger import PaymentLedger
from .loans import LoanStore, LoanManager
from .payments import PaymentRecorder
from .reconciliation import LedgerOutbox, LedgerReconciler
from .requests import LoanRequestManager
from .storage import StorageInterface, create_storage
from .sync import LedgerSynchronizer


class EmiLedgerSystem:
    """EMI ledger with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[EmiLedgerConfig] = None,
                 dispatcher: Optional[EventDispatcher] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        try:
            currency = Currency[self.config.currency]
        except KeyError:
            raise ConfigurationError(f"Unsupported currency: {self.config.currency}")
        partial_weight = Decimal(self.config.partial_payment_weight)

        self.dispatcher = dispatcher or EventDispatcher()
        self.audit_trail = AuditTrail(self.storage)
        self.loan_store = LoanStore(self.storage)
        self.customer_store = CustomerAggregateStore(self.storage, currency)
        self.ledger = PaymentLedger(self.storage)
        self.outbox = LedgerOutbox(self.storage)
        self.reconciler = LedgerReconciler(
            self.storage, self.loan_store, self.ledger, self.outbox, self.audit_trail,
            dispatcher=self.dispatcher, max_attempts=self.config.outbox_max_attempts
        )
        self.loan_manager = LoanManager(
            self.storage, self.loan_store, self.customer_store, self.audit_trail,
            dispatcher=self.dispatcher
        )
        self.payment_recorder = PaymentRecorder(
            self.storage, self.loan_store, self.customer_store, self.outbox, self.reconciler,
            self.audit_trail, dispatcher=self.dispatcher,
            default_collector=self.config.default_collector, partial_weight=partial_weight
        )
        self.synchronizer = LedgerSynchronizer(
            self.storage, self.loan_store, self.customer_store, self.outbox, self.reconciler,
            self.audit_trail, dispatcher=self.dispatcher,
            default_editor=self.config.default_collector, partial_weight=partial_weight
        )
        self.request_manager = LoanRequestManager(
            self.storage, self.loan_store, self.loan_manager, self.audit_trail,
            dispatcher=self.dispatcher
        )

    @property
    def currency(self) -> Currency:
        return self.customer_store.currency

    def close(self) -> None:
        self.storage.close()
