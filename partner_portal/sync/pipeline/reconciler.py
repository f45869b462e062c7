"""
Insert-or-update reconciliation of upstream records into the local mirror.

Each record is written inside its own savepoint so one bad record never
discards its siblings. Every field present in the record overwrites the
stored value (last writer wins), except ``insert_only`` fields which keep
their first value and ``fill_only`` fields which are only written while the
stored value is empty.

Records that reference a parent row which does not exist locally yet are
classified as ``fk_error`` and counted; they self-heal once the parent's own
sync has run. The parent check is explicit (and cached per run) so the
classification does not depend on whether the database enforces foreign
keys; integrity errors raised by the driver are classified from their typed
error codes as a second line.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Hashable, Iterable, Mapping, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from partner_portal.models import SyncRun, db

from ..metrics import record_reconciled
from ..utils import latest, utcnow
from .failure_service import SyncFailureService

# Typed foreign-key violation codes per driver.
POSTGRES_FK_VIOLATION = "23503"
SQLITE_FK_VIOLATION = "SQLITE_CONSTRAINT_FOREIGNKEY"
MYSQL_FK_VIOLATION = 1452

INVALID_RECORD_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


class UpsertOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FK_ERROR = "fk_error"
    FAILED = "failed"


@dataclass(frozen=True)
class ParentReference:
    """A column on the reconciled record that points at another synced table."""

    field: str
    model: Any
    key_field: str = "id"
    required: bool = True


@dataclass
class SourceRecord:
    """One decoded upstream record ready to be written."""

    values: dict[str, Any]
    updated_at: datetime | None = None
    label: str | None = None


@dataclass(frozen=True)
class UpsertResult:
    outcome: UpsertOutcome
    key: Any = None
    instance: Any = None
    detail: str | None = None


@dataclass
class ReconcileStats:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    fk_errors: int = 0
    failed: int = 0
    cache_hits: int = 0
    max_source_updated_at: datetime | None = None
    observed_keys: set = field(default_factory=set)

    def record(self, result: UpsertResult) -> None:
        self.processed += 1
        if result.key is not None:
            self.observed_keys.add(result.key)
        if result.outcome is UpsertOutcome.CREATED:
            self.created += 1
        elif result.outcome is UpsertOutcome.UPDATED:
            self.updated += 1
        elif result.outcome is UpsertOutcome.SKIPPED:
            self.skipped += 1
        elif result.outcome is UpsertOutcome.FK_ERROR:
            self.fk_errors += 1
        else:
            self.failed += 1

    def merge(self, other: "ReconcileStats") -> None:
        for name in ("processed", "created", "updated", "skipped", "fk_errors", "failed", "cache_hits"):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.max_source_updated_at = latest(self.max_source_updated_at, other.max_source_updated_at)
        self.observed_keys.update(other.observed_keys)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("observed_keys")
        payload["max_source_updated_at"] = (
            self.max_source_updated_at.isoformat() if self.max_source_updated_at else None
        )
        return payload


class UpsertReconciler:
    """Single logical writer for one entity table during one run."""

    def __init__(
        self,
        model,
        *,
        entity_type: str,
        sync_type: str,
        key_fields: Sequence[str] = ("id",),
        references: Sequence[ParentReference] = (),
        insert_only: Sequence[str] = (),
        fill_only: Sequence[str] = (),
        session: Session | None = None,
        run: SyncRun | None = None,
        failures: SyncFailureService | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not key_fields:
            raise ValueError("At least one key field is required.")
        self.model = model
        self.entity_type = entity_type
        self.sync_type = sync_type
        self.key_fields = tuple(key_fields)
        self.references = tuple(references)
        self.insert_only = frozenset(insert_only)
        self.fill_only = frozenset(fill_only)
        self.session: Session = session or db.session
        self.run = run
        self.failures = failures or SyncFailureService(self.session)
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.stats = ReconcileStats()
        self.cache_hits = 0
        self._parent_cache: dict[tuple[Any, Hashable], bool] = {}

    # Public API -----------------------------------------------------------------

    def upsert(self, record: SourceRecord | Mapping[str, Any]) -> UpsertResult:
        if not isinstance(record, SourceRecord):
            record = SourceRecord(values=dict(record))
        values = record.values
        key = self._key(values)
        if key is None:
            return self._fail(record, None, "missing_key", f"Record has no value for {', '.join(self.key_fields)}.")

        missing = self._missing_parent(values)
        if missing is not None:
            reference, parent_key = missing
            self.logger.info(
                "Referenced parent not synced yet; counting as FK error",
                extra={
                    "sync_entity_type": self.entity_type,
                    "sync_entity_id": _format_key(key),
                    "sync_parent_field": reference.field,
                    "sync_parent_id": parent_key,
                },
            )
            return UpsertResult(
                UpsertOutcome.FK_ERROR,
                key=key,
                detail=f"{reference.field}={parent_key} does not exist",
            )

        try:
            with self.session.begin_nested():
                instance = self._find(key)
                created = instance is None
                if created:
                    instance = self.model()
                    self._apply(instance, values, creating=True)
                    self.session.add(instance)
                else:
                    self._apply(instance, values, creating=False)
                if hasattr(instance, "mark_seen"):
                    instance.mark_seen()
                if hasattr(instance, "synced_at"):
                    instance.synced_at = self.clock()
        except IntegrityError as exc:
            if is_foreign_key_violation(exc):
                return UpsertResult(UpsertOutcome.FK_ERROR, key=key, detail=str(exc.orig))
            return self._fail(record, key, "integrity_error", str(exc.orig))
        except SQLAlchemyError as exc:
            return self._fail(record, key, "database_error", str(exc))

        return UpsertResult(UpsertOutcome.CREATED if created else UpsertOutcome.UPDATED, key=key, instance=instance)

    def reconcile(
        self,
        items: Iterable[Any],
        *,
        transform: Callable[[Any], SourceRecord | None] | None = None,
    ) -> ReconcileStats:
        """
        Write every item, continuing past per-record failures.

        ``transform`` decodes raw upstream items; returning ``None`` skips the
        item and a decoding exception counts as a failed record.
        """
        batch = ReconcileStats()
        cache_hits_before = self.cache_hits
        for item in items:
            record: SourceRecord | None
            if transform is None:
                record = item if isinstance(item, SourceRecord) else SourceRecord(values=dict(item))
            else:
                try:
                    record = transform(item)
                except INVALID_RECORD_ERRORS as exc:
                    result = self._fail(None, _raw_identifier(item), "invalid_record", f"{type(exc).__name__}: {exc}")
                    self._count(batch, result)
                    continue
            if record is None:
                self._count(batch, UpsertResult(UpsertOutcome.SKIPPED))
                continue

            result = self.upsert(record)
            self._count(batch, result)
            if result.outcome in (UpsertOutcome.CREATED, UpsertOutcome.UPDATED):
                batch.max_source_updated_at = latest(batch.max_source_updated_at, record.updated_at)

        batch.cache_hits = self.cache_hits - cache_hits_before
        self.stats.merge(batch)
        return batch

    # Internal helpers -------------------------------------------------------------

    def _count(self, batch: ReconcileStats, result: UpsertResult) -> None:
        batch.record(result)
        record_reconciled(self.entity_type, result.outcome.value)

    def _key(self, values: Mapping[str, Any]):
        parts = []
        for name in self.key_fields:
            value = values.get(name)
            if value in (None, ""):
                return None
            parts.append(value)
        return parts[0] if len(parts) == 1 else tuple(parts)

    def _find(self, key):
        parts = key if isinstance(key, tuple) else (key,)
        criteria = dict(zip(self.key_fields, parts))
        return self.session.query(self.model).filter_by(**criteria).one_or_none()

    def _apply(self, instance, values: Mapping[str, Any], *, creating: bool) -> None:
        for name, value in values.items():
            if not creating and name in self.insert_only:
                continue
            if not creating and name in self.fill_only and getattr(instance, name) not in (None, ""):
                continue
            if creating and value is None and name in self.insert_only:
                continue
            setattr(instance, name, value)

    def _missing_parent(self, values: Mapping[str, Any]) -> tuple[ParentReference, Any] | None:
        for reference in self.references:
            parent_key = values.get(reference.field)
            if parent_key in (None, ""):
                if reference.required:
                    return reference, parent_key
                continue
            if not self._parent_exists(reference, parent_key):
                if reference.required:
                    return reference, parent_key
                values[reference.field] = None
        return None

    def _parent_exists(self, reference: ParentReference, parent_key: Hashable) -> bool:
        cache_key = (reference.model, parent_key)
        cached = self._parent_cache.get(cache_key)
        if cached is not None:
            self.cache_hits += 1
            return cached
        column = getattr(reference.model, reference.key_field)
        exists = self.session.query(column).filter(column == parent_key).first() is not None
        self._parent_cache[cache_key] = exists
        return exists

    def _fail(self, record: SourceRecord | None, key, reason: str, detail: str) -> UpsertResult:
        self.logger.warning(
            "Failed to reconcile record; continuing with siblings",
            extra={
                "sync_entity_type": self.entity_type,
                "sync_entity_id": _format_key(key),
                "sync_failure_reason": reason,
                "sync_error": detail,
            },
        )
        self.failures.record(
            run=self.run,
            sync_type=self.sync_type,
            entity_type=self.entity_type,
            entity_id=_format_key(key),
            entity_name=record.label if record is not None else None,
            reason=reason,
            details=detail,
        )
        return UpsertResult(UpsertOutcome.FAILED, key=key, detail=detail)


def is_foreign_key_violation(exc: IntegrityError) -> bool:
    """Classify an integrity error as a foreign-key violation from driver error codes."""
    orig = getattr(exc, "orig", None)
    if orig is None:
        return False
    if getattr(orig, "pgcode", None) == POSTGRES_FK_VIOLATION:
        return True
    if getattr(orig, "sqlite_errorname", None) == SQLITE_FK_VIOLATION:
        return True
    args = getattr(orig, "args", ())
    return bool(args) and args[0] == MYSQL_FK_VIOLATION


def _format_key(key) -> str | None:
    if key is None:
        return None
    if isinstance(key, tuple):
        return ":".join(str(part) for part in key)
    return str(key)


def _raw_identifier(item: Any) -> Any:
    if isinstance(item, Mapping):
        return item.get("id")
    return None

