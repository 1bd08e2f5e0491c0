"""
Clinic store: persistence and integrity core for clinic records.

Layout:
- config.py      : settings from environment / .env, logging setup
- db.py          : engine, sessions, declarative Base
- models.py      : ORM entities and enums
- constraints.py : field/uniqueness/reference checks, delete and key-change policies
- audit.py       : audit recorder
- store.py       : entity store, collections, transactions
- queries.py     : read-only composite views and audit feed
- services.py    : clinic use cases (booking, prescriptions, billing)
- seed.py        : reference data (roles, rooms, services)
"""
from .errors import (
    ConflictError,
    ConstraintError,
    InvalidReferenceError,
    NotFoundError,
    RestrictedDeleteError,
    StoreError,
    UniquenessError,
    ValidationError,
)
from .store import EntityStore, retry_on_conflict

__all__ = [
    "ConflictError",
    "ConstraintError",
    "EntityStore",
    "InvalidReferenceError",
    "NotFoundError",
    "RestrictedDeleteError",
    "StoreError",
    "UniquenessError",
    "ValidationError",
    "retry_on_conflict",
]
