"""
Package Ledger

Audits every state-changing package manager action into a SQLite ledger,
linking what the operator asked for with what actually changed, and
reconciles the ledger against live package manager state.
"""

__version__ = "0.1.0"

# Configuration
from pkgledger.config import Settings

# Errors
from pkgledger.errors import (
    AmbiguousPackageError,
    ConstraintViolationError,
    GatewayExecutionError,
    GatewayUnavailableError,
    IntegrityCheckError,
    LedgerError,
    LedgerTimeoutError,
    NotFoundError,
    OperationCancelledError,
    SchemaNotInitializedError,
    TransactionCommitError,
)

# Gateways
from pkgledger.gateways import PackageManagerGateway, PackageRecord

# Core models
from pkgledger.models import (
    CommandHistory,
    CurrentPackage,
    InstallReason,
    LogAction,
    PackageLog,
    PackageTag,
    Tag,
)

# Orchestration
from pkgledger.orchestrate import OperationOutcome

# Reconciliation
from pkgledger.reconciliation import SyncReport

__all__ = [
    # Version
    "__version__",
    # Models
    "CommandHistory",
    "CurrentPackage",
    "PackageLog",
    "Tag",
    "PackageTag",
    "InstallReason",
    "LogAction",
    # Config
    "Settings",
    # Errors
    "LedgerError",
    "NotFoundError",
    "AmbiguousPackageError",
    "GatewayUnavailableError",
    "GatewayExecutionError",
    "ConstraintViolationError",
    "IntegrityCheckError",
    "TransactionCommitError",
    "LedgerTimeoutError",
    "OperationCancelledError",
    "SchemaNotInitializedError",
    # Gateways
    "PackageManagerGateway",
    "PackageRecord",
    # Orchestration
    "OperationOutcome",
    "SyncReport",
]
