# ABOUTME: ledgersync package for credit and deposit ledgers kept in sync with a shared store
# ABOUTME: Exports the Ledger session, create_server, and version info

from ledgersync.ledger import Ledger, make_scope
from ledgersync.server import create_server
from ledgersync.types import Obligation, ObligationKind, Payment, Totals, TotalsStatus

__version__ = "0.1.0"
__all__ = [
    "Ledger",
    "Obligation",
    "ObligationKind",
    "Payment",
    "Totals",
    "TotalsStatus",
    "create_server",
    "make_scope",
    "__version__",
]
