"""
Constraint & cascade engine.

Every mutation the store performs passes through here:
- field constraints (type, enum, length, bounds, required-ness) read from the column metadata
- uniqueness keys read from the table constraints
- referential checks and delete/update propagation driven by POLICIES, the one
  place where the relationship rules are declared
"""
from __future__ import annotations

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Any, Mapping

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    and_,
    delete,
    not_,
    select,
    text,
    update,
)
from sqlalchemy.orm import Session

from .db import Base
from .errors import InvalidReferenceError, RestrictedDeleteError, UniquenessError, ValidationError
from .models import ENTITIES, GT, MIN, SYSTEM

logger = logging.getLogger(__name__)

Key = tuple[Any, ...]


class OnDelete(enum.Enum):
    CASCADE = "cascade"
    SET_NULL = "set_null"
    RESTRICT = "restrict"


@dataclass(frozen=True)
class Relationship:
    child: str
    column: str
    parent: str
    on_delete: OnDelete


# Identifier changes on the parent always propagate to the child column.
POLICIES: tuple[Relationship, ...] = (
    Relationship("user", "role_id", "role", OnDelete.RESTRICT),
    Relationship("doctor", "user_id", "user", OnDelete.SET_NULL),
    Relationship("audit_log", "performed_by_user", "user", OnDelete.SET_NULL),
    Relationship("appointment", "created_by_user", "user", OnDelete.SET_NULL),
    Relationship("appointment", "patient_id", "patient", OnDelete.CASCADE),
    Relationship("prescription", "patient_id", "patient", OnDelete.CASCADE),
    Relationship("invoice", "patient_id", "patient", OnDelete.RESTRICT),
    Relationship("appointment", "doctor_id", "doctor", OnDelete.RESTRICT),
    Relationship("prescription", "doctor_id", "doctor", OnDelete.RESTRICT),
    Relationship("appointment", "room_id", "room", OnDelete.SET_NULL),
    Relationship("appointment_service", "service_id", "service", OnDelete.RESTRICT),
    Relationship("appointment_service", "appointment_id", "appointment", OnDelete.CASCADE),
    Relationship("prescription", "appointment_id", "appointment", OnDelete.CASCADE),
    Relationship("invoice", "appointment_id", "appointment", OnDelete.SET_NULL),
    Relationship("prescription_item", "medication_id", "medication", OnDelete.RESTRICT),
    Relationship("prescription_item", "prescription_id", "prescription", OnDelete.CASCADE),
    Relationship("invoice_item", "invoice_id", "invoice", OnDelete.CASCADE),
)


def policies_for_parent(entity: str) -> list[Relationship]:
    return [rel for rel in POLICIES if rel.parent == entity]


def policies_for_child(entity: str) -> list[Relationship]:
    return [rel for rel in POLICIES if rel.child == entity]


# =========================
# Entities and keys
# =========================
def model_for(entity: str) -> type[Base]:
    try:
        return ENTITIES[entity]
    except KeyError:
        raise ValidationError(f"Unknown entity '{entity}'.", entity=entity) from None


def pk_columns(model: type[Base]) -> tuple[Column, ...]:
    return tuple(model.__table__.primary_key.columns)


def normalize_key(entity: str, key: Any) -> Key:
    cols = pk_columns(model_for(entity))
    values = tuple(key) if isinstance(key, (tuple, list)) else (key,)
    if len(values) != len(cols) or any(v is None for v in values):
        names = ", ".join(c.name for c in cols)
        raise ValidationError(f"{entity} key must be ({names}).", entity=entity, value=key)
    return values


def external_key(entity: str, key: Key) -> Any:
    """Integer id for surrogate-keyed entities, the tuple itself for junctions."""
    return key[0] if len(key) == 1 else key


def key_filter(model: type[Base], key: Key):
    return and_(*(col == value for col, value in zip(pk_columns(model), key)))


def _is_surrogate(column: Column) -> bool:
    return column.primary_key and len(column.table.primary_key.columns) == 1 and column.autoincrement is not False


def _filled_on_flush(column: Column) -> bool:
    return _is_surrogate(column) or (column.default is not None and not column.default.is_scalar)


@lru_cache(maxsize=None)
def unique_keys(model: type[Base]) -> tuple[tuple[str, ...], ...]:
    table = model.__table__
    keys: list[tuple[str, ...]] = [tuple(c.name for c in table.primary_key.columns)]
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint):
            names = tuple(c.name for c in constraint.columns)
            if names not in keys:
                keys.append(names)
    for index in table.indexes:
        names = tuple(c.name for c in index.columns)
        if index.unique and names not in keys:
            keys.append(names)
    return tuple(keys)


# =========================
# Field constraints
# =========================
def _invalid(entity: str, name: str, value: Any, reason: str) -> ValidationError:
    return ValidationError(f"{entity}.{name} {reason}.", entity=entity, field=name, value=value)


def coerce_value(entity: str, column: Column, value: Any) -> Any:
    """Convert an input value to the column's Python type or raise ValidationError."""
    if value is None:
        return None
    name = column.name
    ctype = column.type

    # Enum is a String subtype: check it first
    if isinstance(ctype, Enum) and ctype.enum_class is not None:
        enum_cls = ctype.enum_class
        if isinstance(value, enum_cls):
            return value
        try:
            return enum_cls(value)
        except ValueError:
            allowed = ", ".join(m.value for m in enum_cls)
            raise _invalid(entity, name, value, f"must be one of: {allowed}") from None

    if isinstance(ctype, Integer):
        if isinstance(value, bool) or not isinstance(value, int):
            raise _invalid(entity, name, value, "must be an integer")
        return value

    if isinstance(ctype, Numeric):
        if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
            raise _invalid(entity, name, value, "must be a number")
        try:
            number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except InvalidOperation:
            raise _invalid(entity, name, value, "must be a number") from None
        if not number.is_finite():
            raise _invalid(entity, name, value, "must be a finite number")
        if ctype.scale is not None and number.as_tuple().exponent < -ctype.scale:
            raise _invalid(entity, name, value, f"allows at most {ctype.scale} decimal places")
        return number

    if isinstance(ctype, DateTime):
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError:
                raise _invalid(entity, name, value, "must be an ISO datetime") from None
        if not isinstance(value, datetime):
            raise _invalid(entity, name, value, "must be a datetime")
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(ctype, Date):
        if isinstance(value, str):
            try:
                value = date.fromisoformat(value)
            except ValueError:
                raise _invalid(entity, name, value, "must be an ISO date") from None
        if isinstance(value, datetime) or not isinstance(value, date):
            raise _invalid(entity, name, value, "must be a date")
        return value

    if isinstance(ctype, String):
        if not isinstance(value, str):
            raise _invalid(entity, name, value, "must be a string")
        if ctype.length is not None and len(value) > ctype.length:
            raise _invalid(entity, name, value, f"must be at most {ctype.length} characters")
        return value

    return value


def check_row(entity: str, row: Mapping[str, Any]) -> None:
    """Required-ness and bounds on a complete row (insert values or merged update)."""
    model = model_for(entity)
    for column in model.__table__.columns:
        name = column.name
        value = row.get(name)
        if value is None:
            if not column.nullable and not _filled_on_flush(column):
                raise _invalid(entity, name, value, "is required")
            continue
        if (
            not column.nullable
            and isinstance(column.type, String)
            and not isinstance(column.type, Enum)
            and not value.strip()
        ):
            raise _invalid(entity, name, value, "must not be blank")
        if MIN in column.info and value < column.info[MIN]:
            raise _invalid(entity, name, value, f"must be >= {column.info[MIN]}")
        if GT in column.info and value <= column.info[GT]:
            raise _invalid(entity, name, value, f"must be > {column.info[GT]}")


def _check_field_names(entity: str, model: type[Base], values: Mapping[str, Any]) -> None:
    columns = model.__table__.columns
    for name in values:
        if name in getattr(model, "__derived__", ()):
            raise _invalid(entity, name, values[name], "is derived and cannot be set")
        if name not in columns:
            raise _invalid(entity, name, values[name], "is not a field")
        if columns[name].info.get(SYSTEM):
            raise _invalid(entity, name, values[name], "is managed by the store")


def prepare_insert(entity: str, values: Mapping[str, Any]) -> dict[str, Any]:
    """Coerced insert values with scalar defaults applied; raises ValidationError."""
    model = model_for(entity)
    _check_field_names(entity, model, values)

    row: dict[str, Any] = {}
    for column in model.__table__.columns:
        if column.name in values:
            row[column.name] = coerce_value(entity, column, values[column.name])
        elif column.default is not None and column.default.is_scalar:
            row[column.name] = column.default.arg
    check_row(entity, row)
    return row


def prepare_update(entity: str, current: Mapping[str, Any], changes: Mapping[str, Any]) -> tuple[dict, dict]:
    """(coerced changes, merged row). Junction keys only accept their current value; ids may change but never to NULL."""
    model = model_for(entity)
    _check_field_names(entity, model, changes)
    pk = pk_columns(model)
    columns = model.__table__.columns

    coerced: dict[str, Any] = {}
    for name, value in changes.items():
        column = columns[name]
        if column.primary_key and value is None:
            raise _invalid(entity, name, value, "is required")
        value = coerce_value(entity, column, value)
        if column.primary_key and len(pk) > 1:
            if value != current.get(name):
                raise _invalid(entity, name, value, "is part of the key and cannot change")
            continue
        coerced[name] = value

    merged = {c.name: current.get(c.name) for c in columns}
    merged.update(coerced)
    check_row(entity, merged)
    return coerced, merged


# =========================
# Uniqueness & references
# =========================
def check_unique(session: Session, entity: str, row: Mapping[str, Any], exclude: Key | None = None) -> None:
    model = model_for(entity)
    table = model.__table__
    for names in unique_keys(model):
        values = [row.get(n) for n in names]
        if any(v is None for v in values):
            continue  # NULLs never collide
        stmt = select(*pk_columns(model)).where(*(table.c[n] == v for n, v in zip(names, values))).limit(1)
        if exclude is not None:
            stmt = stmt.where(not_(key_filter(model, exclude)))
        if session.execute(stmt).first() is not None:
            label = ", ".join(names)
            shown = values[0] if len(values) == 1 else tuple(values)
            raise UniquenessError(
                f"{entity} with ({label}) = {shown!r} already exists.",
                entity=entity,
                field=label,
                value=shown,
            )


def check_references(session: Session, entity: str, row: Mapping[str, Any]) -> None:
    for rel in policies_for_child(entity):
        value = row.get(rel.column)
        if value is None:
            continue
        parent = model_for(rel.parent)
        (parent_pk,) = pk_columns(parent)
        if session.execute(select(parent_pk).where(parent_pk == value)).first() is None:
            raise InvalidReferenceError(
                f"{entity}.{rel.column} references missing {rel.parent} {value!r}.",
                entity=entity,
                field=rel.column,
                value=value,
            )


# =========================
# Delete planning
# =========================
@dataclass
class DeletePlan:
    entity: str
    key: Key
    deletions: list[tuple[str, Key]] = field(default_factory=list)
    nullify: list[tuple[Relationship, Any, int]] = field(default_factory=list)

    def summary(self) -> dict[str, dict[str, int]]:
        cascaded: dict[str, int] = defaultdict(int)
        for entity, key in self.deletions:
            if (entity, key) != (self.entity, self.key):
                cascaded[entity] += 1
        nullified: dict[str, int] = defaultdict(int)
        for rel, _, count in self.nullify:
            nullified[f"{rel.child}.{rel.column}"] += count
        return {"cascaded": dict(cascaded), "nullified": dict(nullified)}


def plan_delete(session: Session, entity: str, key: Key) -> DeletePlan:
    """
    Walk the policy table from the target row:
    - RESTRICT with dependents -> RestrictedDeleteError, nothing changed
    - CASCADE -> dependents join the plan (and are walked in turn)
    - SET_NULL -> dependents' reference is cleared
    """
    plan = DeletePlan(entity, key)
    seen: set[tuple[str, Key]] = set()
    pending: list[tuple[str, Key]] = [(entity, key)]

    while pending:
        current, current_key = pending.pop(0)
        if (current, current_key) in seen:
            continue
        seen.add((current, current_key))
        plan.deletions.append((current, current_key))

        for rel in policies_for_parent(current):
            parent_value = current_key[0]
            child = model_for(rel.child)
            column = child.__table__.c[rel.column]
            child_keys = [tuple(r) for r in session.execute(select(*pk_columns(child)).where(column == parent_value))]
            if not child_keys:
                continue

            if rel.on_delete is OnDelete.RESTRICT:
                raise RestrictedDeleteError(
                    f"Cannot delete {current} {parent_value}: {len(child_keys)} {rel.child} row(s) reference it.",
                    entity=current,
                    field=rel.column,
                    value=parent_value,
                    dependent=rel.child,
                    count=len(child_keys),
                )
            if rel.on_delete is OnDelete.CASCADE:
                pending.extend((rel.child, k) for k in child_keys)
            else:
                plan.nullify.append((rel, parent_value, len(child_keys)))

    return plan


def apply_delete(session: Session, plan: DeletePlan) -> None:
    for rel, parent_value, count in plan.nullify:
        table = model_for(rel.child).__table__
        session.execute(update(table).where(table.c[rel.column] == parent_value).values({rel.column: None}))
        logger.debug("cleared %s.%s on %d row(s)", rel.child, rel.column, count)

    # children before parents: ENTITIES lists parents first
    by_entity: dict[str, list[Key]] = defaultdict(list)
    for entity, key in plan.deletions:
        by_entity[entity].append(key)
    for entity in reversed(list(ENTITIES)):
        model = model_for(entity)
        for key in by_entity.get(entity, ()):
            session.execute(delete(model.__table__).where(key_filter(model, key)))
        if entity in by_entity:
            logger.debug("deleted %d %s row(s)", len(by_entity[entity]), entity)


def propagate_key_change(session: Session, entity: str, old: Any, new: Any) -> None:
    """Move every child reference from old to new id before the parent row itself changes."""
    if session.get_bind().dialect.name == "sqlite":
        # children point at the new id until the parent UPDATE lands
        session.execute(text("PRAGMA defer_foreign_keys = ON"))
    for rel in policies_for_parent(entity):
        table = model_for(rel.child).__table__
        result = session.execute(update(table).where(table.c[rel.column] == old).values({rel.column: new}))
        if result.rowcount:
            logger.debug("moved %d %s.%s reference(s) %s -> %s", result.rowcount, rel.child, rel.column, old, new)
