"""
Entity store: the only way to read or change clinic records.

Each mutation runs in one write transaction: constraint checks, cascade
effects and the audit row commit together or not at all.
"""
from __future__ import annotations

import logging
import operator
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Sequence, TypeVar

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .audit import AuditRecorder
from .config import Settings, get_settings
from .constraints import (
    apply_delete,
    check_references,
    check_unique,
    coerce_value,
    external_key,
    key_filter,
    model_for,
    normalize_key,
    pk_columns,
    plan_delete,
    prepare_insert,
    prepare_update,
    propagate_key_change,
)
from .db import Base, build_engine, build_session_factories, db_session
from .errors import ConflictError, NotFoundError, ValidationError
from .models import APPEND_ONLY, AuditAction

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
    "in": lambda col, values: col.in_(values),
    "isnull": lambda col, flag: col.is_(None) if flag else col.is_not(None),
}


def _guard_append_only(entity: str, action: str) -> None:
    if entity in APPEND_ONLY:
        raise ValidationError(f"{entity} is append-only: {action} is not allowed.", entity=entity)


def _attribute(entity: str, model: type[Base], name: str):
    if name in model.__table__.columns or name in getattr(model, "__derived__", ()):
        return getattr(model, name)
    raise ValidationError(f"{entity}.{name} is not a field.", entity=entity, field=name)


def build_find_statement(
    entity: str,
    filters: Mapping[str, Any],
    order_by: str | Sequence[str] | None = None,
    limit: int | None = None,
):
    """
    select() for a collection from field lookups:
    - `field=value` / `field__op=value`, op in eq, ne, lt, lte, gt, gte, in, isnull
    - order_by: "field" or "-field" (descending), or a sequence of them
    """
    model = model_for(entity)
    columns = model.__table__.columns
    stmt = select(model)

    for lookup, value in filters.items():
        name, _, op = lookup.partition("__")
        op = op or "eq"
        if op not in _OPERATORS:
            raise ValidationError(f"Unsupported lookup '{lookup}'.", entity=entity, field=name)
        attr = _attribute(entity, model, name)
        if name in columns and op != "isnull":
            if op == "in":
                value = [coerce_value(entity, columns[name], v) for v in value]
            else:
                value = coerce_value(entity, columns[name], value)
        stmt = stmt.where(_OPERATORS[op](attr, value))

    if isinstance(order_by, str):
        order_by = [order_by]
    for term in order_by or ():
        attr = _attribute(entity, model, term.lstrip("-"))
        stmt = stmt.order_by(attr.desc() if term.startswith("-") else attr.asc())

    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


class QueryResult:
    """
    Lazy result of `find`: nothing runs until iterated, and every iteration
    re-runs the query on a fresh snapshot.
    """

    def __init__(self, store: "EntityStore", stmt, where: Callable[[Any], bool] | None = None) -> None:
        self._store = store
        self._stmt = stmt
        self._where = where

    def __iter__(self) -> Iterator[Any]:
        with self._store.read_session() as s:
            rows = list(s.scalars(self._stmt))
        for row in rows:
            if self._where is None or self._where(row):
                yield row

    def all(self) -> list[Any]:
        return list(self)

    def first(self) -> Any | None:
        return next(iter(self), None)


class Transaction:
    """Unit of work: every operation shares one session and commits together."""

    def __init__(self, store: "EntityStore", session: Session, performed_by: int | None = None) -> None:
        self.store = store
        self.session = session
        self.performed_by = performed_by

    def get(self, entity: str, key: Any) -> Any:
        model = model_for(entity)
        key = normalize_key(entity, key)
        obj = self.session.get(model, key, populate_existing=True)
        if obj is None:
            raise NotFoundError(f"{entity} {external_key(entity, key)!r} not found.", entity=entity, value=key)
        return obj

    def insert(
        self,
        entity: str,
        values: Mapping[str, Any],
        *,
        audit: bool = True,
        performed_by: int | None = None,
    ) -> Any:
        _guard_append_only(entity, "insert")
        model = model_for(entity)
        row = prepare_insert(entity, values)
        check_unique(self.session, entity, row)
        check_references(self.session, entity, row)

        obj = model(**row)
        self.session.add(obj)
        self.session.flush()

        key = external_key(entity, tuple(getattr(obj, c.key) for c in pk_columns(model)))
        logger.info("inserted %s %s", entity, key)
        self._audit(entity, key, AuditAction.CREATE, row, audit, performed_by)
        return key

    def update(
        self,
        entity: str,
        key: Any,
        changes: Mapping[str, Any],
        *,
        audit: bool = True,
        performed_by: int | None = None,
    ) -> None:
        _guard_append_only(entity, "update")
        model = model_for(entity)
        obj = self.get(entity, key)
        old_key = normalize_key(entity, key)

        coerced, merged = prepare_update(entity, obj.as_dict(), changes)
        if not coerced:
            return
        check_unique(self.session, entity, merged, exclude=old_key)
        check_references(self.session, entity, merged)

        new_key = tuple(merged[c.name] for c in pk_columns(model))
        if new_key != old_key:
            propagate_key_change(self.session, entity, old_key[0], new_key[0])

        self.session.execute(update(model.__table__).where(key_filter(model, old_key)).values(**coerced))
        self.session.expunge(obj)
        if new_key != old_key:
            self.session.expire_all()

        logger.info("updated %s %s fields=%s", entity, external_key(entity, new_key), sorted(coerced))
        self._audit(entity, external_key(entity, new_key), AuditAction.UPDATE, coerced, audit, performed_by)

    def delete(
        self,
        entity: str,
        key: Any,
        *,
        audit: bool = True,
        performed_by: int | None = None,
    ) -> None:
        _guard_append_only(entity, "delete")
        model = model_for(entity)
        key = normalize_key(entity, key)
        if self.session.execute(select(*pk_columns(model)).where(key_filter(model, key))).first() is None:
            raise NotFoundError(f"{entity} {external_key(entity, key)!r} not found.", entity=entity, value=key)

        plan = plan_delete(self.session, entity, key)
        apply_delete(self.session, plan)
        summary = plan.summary()
        logger.info("deleted %s %s %s", entity, external_key(entity, key), summary)
        self._audit(entity, external_key(entity, key), AuditAction.DELETE, summary, audit, performed_by)

    def _audit(
        self,
        entity: str,
        key: Any,
        action: AuditAction,
        details: Mapping[str, Any],
        audit: bool,
        performed_by: int | None,
    ) -> None:
        if not audit:
            return
        performer = performed_by if performed_by is not None else self.performed_by
        self.store.audit.record(self.session, entity, key, action, performer, details)


class Collection:
    """Operations of one entity collection, e.g. `store.patients.insert({...})`."""

    def __init__(self, store: "EntityStore", entity: str) -> None:
        model_for(entity)
        self.store = store
        self.entity = entity

    def insert(self, values: Mapping[str, Any], **kwargs: Any) -> Any:
        return self.store.insert(self.entity, values, **kwargs)

    def update(self, key: Any, changes: Mapping[str, Any], **kwargs: Any) -> None:
        self.store.update(self.entity, key, changes, **kwargs)

    def delete(self, key: Any, **kwargs: Any) -> None:
        self.store.delete(self.entity, key, **kwargs)

    def get(self, key: Any) -> Any:
        return self.store.get(self.entity, key)

    def find(self, where: Callable[[Any], bool] | None = None, /, **kwargs: Any) -> QueryResult:
        return self.store.find(self.entity, where, **kwargs)


class EntityStore:
    """
    Clinic records behind one transactional façade.

    store = EntityStore.from_url("sqlite:///clinic.sqlite")
    role_id = store.roles.insert({"name": "doctor"})
    """

    def __init__(
        self,
        engine: Engine | None = None,
        *,
        settings: Settings | None = None,
        create_schema: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.engine = engine or build_engine(
            self.settings.database_url,
            echo=self.settings.echo_sql,
            busy_timeout=self.settings.busy_timeout,
        )
        self._writer, self._reader = build_session_factories(self.engine)
        self.audit = AuditRecorder(enabled=self.settings.audit_enabled)

        self.roles = Collection(self, "role")
        self.users = Collection(self, "user")
        self.patients = Collection(self, "patient")
        self.doctors = Collection(self, "doctor")
        self.rooms = Collection(self, "room")
        self.services = Collection(self, "service")
        self.appointments = Collection(self, "appointment")
        self.appointment_services = Collection(self, "appointment_service")
        self.medications = Collection(self, "medication")
        self.prescriptions = Collection(self, "prescription")
        self.prescription_items = Collection(self, "prescription_item")
        self.invoices = Collection(self, "invoice")
        self.invoice_items = Collection(self, "invoice_item")
        self.audit_logs = Collection(self, "audit_log")

        if create_schema:
            self.create_schema()

    @classmethod
    def from_url(cls, url: str, **overrides: Any) -> "EntityStore":
        base = get_settings()
        settings = Settings(
            database_url=url,
            echo_sql=overrides.pop("echo_sql", base.echo_sql),
            busy_timeout=overrides.pop("busy_timeout", base.busy_timeout),
            audit_enabled=overrides.pop("audit_enabled", base.audit_enabled),
            log_level=base.log_level,
        )
        return cls(settings=settings, **overrides)

    # =========================
    # Schema / lifecycle
    # =========================
    def create_schema(self) -> None:
        """Create missing tables; existing ones are left untouched."""
        Base.metadata.create_all(bind=self.engine)

    def drop_schema(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # =========================
    # Sessions
    # =========================
    @contextmanager
    def transaction(self, performed_by: int | None = None) -> Iterator[Transaction]:
        with db_session(self._writer) as s:
            yield Transaction(self, s, performed_by)

    @contextmanager
    def read_session(self) -> Iterator[Session]:
        with db_session(self._reader) as s:
            yield s

    # =========================
    # Operations
    # =========================
    def insert(self, entity: str, values: Mapping[str, Any], *, performed_by: int | None = None, audit: bool = True) -> Any:
        with self.transaction(performed_by) as tx:
            return tx.insert(entity, values, audit=audit)

    def update(
        self,
        entity: str,
        key: Any,
        changes: Mapping[str, Any],
        *,
        performed_by: int | None = None,
        audit: bool = True,
    ) -> None:
        with self.transaction(performed_by) as tx:
            tx.update(entity, key, changes, audit=audit)

    def delete(self, entity: str, key: Any, *, performed_by: int | None = None, audit: bool = True) -> None:
        with self.transaction(performed_by) as tx:
            tx.delete(entity, key, audit=audit)

    def get(self, entity: str, key: Any) -> Any:
        model = model_for(entity)
        key = normalize_key(entity, key)
        with self.read_session() as s:
            obj = s.get(model, key)
            if obj is None:
                raise NotFoundError(f"{entity} {external_key(entity, key)!r} not found.", entity=entity, value=key)
            return obj

    def find(
        self,
        entity: str,
        where: Callable[[Any], bool] | None = None,
        /,
        *,
        order_by: str | Sequence[str] | None = None,
        limit: int | None = None,
        **filters: Any,
    ) -> QueryResult:
        return QueryResult(self, build_find_statement(entity, filters, order_by, limit), where)

    def collection(self, entity: str) -> Collection:
        return Collection(self, entity)


def retry_on_conflict(func: Callable[..., T], *args: Any, attempts: int = 3, backoff: float = 0.05, **kwargs: Any) -> T:
    """Call func, retrying on ConflictError with a linear backoff; the last conflict propagates."""
    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except ConflictError:
            if attempt >= attempts:
                raise
            logger.info("conflict on attempt %d/%d, retrying", attempt, attempts)
            time.sleep(backoff * attempt)
            attempt += 1
