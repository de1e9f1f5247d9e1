"""
Database Package Initialization.

============================================================
DECISION STORE PERSISTENCE LAYER
============================================================

Engine/session management and ORM models for the decision
store. All transactions are explicit with commit/rollback
and every failure raises.

============================================================
"""

# Core engine and session management
from .engine import (
    Base,
    create_database_engine,
    create_session_factory,
    get_engine,
    get_session_factory,
    transaction_scope,
    initialize_database,
    create_all_tables,
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
)

# ORM Models
from .models import (
    DecisionModel,
    AssumptionModel,
    ConstraintModel,
    DecisionAssumptionLink,
    DecisionConstraintLink,
    DependencyModel,
    EvaluationRecordModel,
)


__all__ = [
    "Base",
    "create_database_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "transaction_scope",
    "initialize_database",
    "create_all_tables",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "DecisionModel",
    "AssumptionModel",
    "ConstraintModel",
    "DecisionAssumptionLink",
    "DecisionConstraintLink",
    "DependencyModel",
    "EvaluationRecordModel",
]
