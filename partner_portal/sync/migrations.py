"""
Versioned, replay-safe schema migrations.

Each version is an ordered list of operations. Every operation inspects the
live schema before acting and reports ``applied``, ``already_applied`` or
``skipped``; running a version against a schema that already has its
changes is a no-op. Operations run in their own transaction, so a crash
leaves earlier operations in place and a rerun picks up where it stopped.
The ``schema_info`` row is written once, after every pending version has
run. Structural failures abort the run with ``MigrationError`` and leave
the version untouched; seed failures are logged and skipped.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml
from flask import current_app, has_app_context
from sqlalchemy import Index, MetaData, Table, inspect, literal, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateColumn
from sqlalchemy.sql import ClauseElement

from partner_portal.models import AdminProfile, ScheduledTask, SchemaInfo, db

from .errors import MigrationError, TaskConfigurationError
from .metrics import record_schema_version
from .task_config import parse_task_config
from .utils import utcnow

SCHEMA_INFO_ID = 1
DEFAULT_SCHEDULED_TASKS_PATH = Path(__file__).resolve().parents[2] / "config" / "scheduled_tasks.yaml"

DEFAULT_ADMIN_PROFILES: tuple[dict[str, Any], ...] = (
    {
        "name": "Admin",
        "description": "Full access to partner data, sync controls and failure triage.",
        "permissions": {
            "users": {"view": True, "create": True, "edit": True, "delete": True},
            "data_management": {"view": True, "sync": True},
            "reports": {"view": True},
        },
    },
    {
        "name": "Sync Operator",
        "description": "Runs and monitors LMS/CRM syncs.",
        "permissions": {
            "data_management": {"view": True, "sync": True},
            "reports": {"view": True},
        },
    },
)


class OperationResult(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    SKIPPED = "skipped"
    PENDING = "pending"


@dataclass
class OperationReport:
    version: int
    operation: str
    result: OperationResult
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "operation": self.operation,
            "result": self.result.value,
            "detail": self.detail,
        }


@dataclass
class MigrationReport:
    from_version: int
    to_version: int
    dry_run: bool = False
    operations: list[OperationReport] = field(default_factory=list)

    @property
    def applied(self) -> list[OperationReport]:
        return [op for op in self.operations if op.result is OperationResult.APPLIED]

    @property
    def skipped(self) -> list[OperationReport]:
        return [op for op in self.operations if op.result is OperationResult.SKIPPED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "dry_run": self.dry_run,
            "operations": [op.to_dict() for op in self.operations],
        }


# Operations -------------------------------------------------------------------


class Operation:
    """One schema step. ``critical`` operations abort the run on failure."""

    critical = True

    def describe(self) -> str:
        raise NotImplementedError

    def apply(self, connection: Connection, metadata: MetaData, *, dry_run: bool) -> OperationResult:
        raise NotImplementedError


def _table(metadata: MetaData, name: str) -> Table:
    table = metadata.tables.get(name)
    if table is None:
        raise MigrationError(f"Table '{name}' is not defined in the model metadata.")
    return table


class CreateTable(Operation):
    def __init__(self, table_name: str) -> None:
        self.table_name = table_name

    def describe(self) -> str:
        return f"create table {self.table_name}"

    def apply(self, connection, metadata, *, dry_run):
        if inspect(connection).has_table(self.table_name):
            return OperationResult.ALREADY_APPLIED
        if dry_run:
            return OperationResult.PENDING
        _table(metadata, self.table_name).create(connection)
        return OperationResult.APPLIED


class AddColumn(Operation):
    """
    ``ALTER TABLE ... ADD COLUMN`` from the model's column definition.
    NOT NULL columns need ``server_default`` so existing rows can be filled.
    """

    def __init__(self, table_name: str, column_name: str, *, server_default: Any = None) -> None:
        self.table_name = table_name
        self.column_name = column_name
        self.server_default = server_default

    def describe(self) -> str:
        return f"add column {self.table_name}.{self.column_name}"

    def apply(self, connection, metadata, *, dry_run):
        table = _table(metadata, self.table_name)
        column = table.c.get(self.column_name)
        if column is None:
            raise MigrationError(f"Column '{self.column_name}' is not defined on '{self.table_name}'.")
        inspector = inspect(connection)
        if not inspector.has_table(self.table_name):
            if dry_run:
                return OperationResult.PENDING
            raise MigrationError(f"Cannot add '{self.column_name}': table '{self.table_name}' does not exist.")
        existing = {info["name"] for info in inspector.get_columns(self.table_name)}
        if self.column_name in existing:
            return OperationResult.ALREADY_APPLIED
        if dry_run:
            return OperationResult.PENDING
        if not column.nullable and self.server_default is None:
            raise MigrationError(f"NOT NULL column '{self.table_name}.{self.column_name}' needs a server default.")

        dialect = connection.dialect
        ddl = (
            f"ALTER TABLE {dialect.identifier_preparer.format_table(table)} "
            f"ADD COLUMN {CreateColumn(column).compile(dialect=dialect)}"
        )
        if self.server_default is not None:
            default = self.server_default
            if not isinstance(default, ClauseElement):
                default = literal(default)
            ddl += f" DEFAULT {default.compile(dialect=dialect, compile_kwargs={'literal_binds': True})}"
        connection.exec_driver_sql(ddl)
        return OperationResult.APPLIED


class AddIndex(Operation):
    def __init__(self, table_name: str, index_name: str) -> None:
        self.table_name = table_name
        self.index_name = index_name

    def describe(self) -> str:
        return f"add index {self.index_name} on {self.table_name}"

    def _index(self, metadata: MetaData) -> Index:
        for index in _table(metadata, self.table_name).indexes:
            if index.name == self.index_name:
                return index
        raise MigrationError(f"Index '{self.index_name}' is not defined on '{self.table_name}'.")

    def apply(self, connection, metadata, *, dry_run):
        index = self._index(metadata)
        inspector = inspect(connection)
        if dry_run and not inspector.has_table(self.table_name):
            return OperationResult.PENDING
        existing = {info["name"] for info in inspector.get_indexes(self.table_name)}
        if self.index_name in existing:
            return OperationResult.ALREADY_APPLIED
        if dry_run:
            return OperationResult.PENDING
        index.create(connection)
        return OperationResult.APPLIED


class SeedRows(Operation):
    """Insert rows whose key is not present yet. Seed data is non-critical."""

    critical = False

    def __init__(self, table_name: str, key_field: str) -> None:
        self.table_name = table_name
        self.key_field = key_field

    def describe(self) -> str:
        return f"seed {self.table_name}"

    def rows(self) -> Sequence[Mapping[str, Any]]:
        raise NotImplementedError

    def apply(self, connection, metadata, *, dry_run):
        table = _table(metadata, self.table_name)
        rows = list(self.rows())
        if dry_run and not inspect(connection).has_table(self.table_name):
            return OperationResult.PENDING
        present = set(connection.execute(select(table.c[self.key_field])).scalars())
        missing = [row for row in rows if row[self.key_field] not in present]
        if not missing:
            return OperationResult.ALREADY_APPLIED
        if dry_run:
            return OperationResult.PENDING
        connection.execute(table.insert(), missing)
        return OperationResult.APPLIED


class SeedAdminProfiles(SeedRows):
    def __init__(self, profiles: Sequence[Mapping[str, Any]] = DEFAULT_ADMIN_PROFILES) -> None:
        super().__init__(AdminProfile.__tablename__, "name")
        self.profiles = profiles

    def rows(self):
        now = utcnow()
        return [
            {**profile, "is_system": True, "created_at": now, "updated_at": now}
            for profile in self.profiles
        ]


class SeedScheduledTasks(SeedRows):
    """Default task catalog from ``config/scheduled_tasks.yaml``."""

    def __init__(self, path: str | Path | None = None) -> None:
        super().__init__(ScheduledTask.__tablename__, "task_type")
        self.path = Path(path) if path else DEFAULT_SCHEDULED_TASKS_PATH

    def rows(self):
        with self.path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
        entries = document.get("tasks") or []
        now = utcnow()
        rows = []
        for entry in entries:
            task_type = entry["task_type"]
            try:
                config = parse_task_config(task_type, entry.get("config")).to_dict()
            except TaskConfigurationError as exc:
                raise ValueError(f"Invalid seed configuration for '{task_type}': {exc}") from exc
            rows.append(
                {
                    "task_type": task_type,
                    "task_name": entry.get("task_name") or task_type,
                    "description": entry.get("description"),
                    "enabled": bool(entry.get("enabled", True)),
                    "interval_minutes": entry.get("interval_minutes"),
                    "schedule_days": entry.get("schedule_days"),
                    "schedule_time": entry.get("schedule_time"),
                    "config": config,
                    "run_count": 0,
                    "fail_count": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        return rows


_SOFT_DELETE_TABLES = ("lms_groups", "partners", "contacts", "leads")


def _soft_delete_columns() -> list[Operation]:
    ops: list[Operation] = []
    for table_name in _SOFT_DELETE_TABLES:
        ops.extend(
            (
                AddColumn(table_name, "is_active", server_default=True),
                AddColumn(table_name, "deleted_at"),
                AddColumn(table_name, "deactivation_reason"),
                AddIndex(table_name, f"ix_{table_name}_is_active"),
            )
        )
    return ops


def default_migrations(*, scheduled_tasks_path: str | Path | None = None) -> dict[int, list[Operation]]:
    """The schema history, oldest first."""
    return {
        1: [
            CreateTable("admin_profiles"),
            CreateTable("users"),
            CreateTable("admin_logs"),
            CreateTable("partners"),
            CreateTable("lms_users"),
            CreateTable("contacts"),
            CreateTable("leads"),
            CreateTable("lms_groups"),
            CreateTable("lms_group_members"),
            CreateTable("lms_courses"),
            CreateTable("lms_enrollments"),
            CreateTable("sync_runs"),
        ],
        2: [
            CreateTable("sync_cursors"),
            AddColumn("lms_users", "enrollment_synced_at"),
            AddIndex("lms_users", "idx_lms_users_enrollment_synced_at"),
        ],
        3: [*_soft_delete_columns(), AddColumn("lms_groups", "last_checked_at")],
        4: [
            AddColumn("lms_group_members", "pending_source", server_default="api"),
            AddIndex("lms_group_members", "idx_lms_group_members_pending_source"),
        ],
        5: [
            CreateTable("scheduled_tasks"),
            CreateTable("task_run_history"),
            SeedScheduledTasks(scheduled_tasks_path),
        ],
        6: [CreateTable("sync_failures")],
        7: [
            AddColumn("partners", "parent_partner_id"),
            AddColumn("partners", "crm_parent_id"),
            AddColumn("partners", "partner_family"),
            AddIndex("partners", "idx_partners_family"),
        ],
        8: [
            AddColumn("lms_courses", "certification_category"),
            AddIndex("lms_courses", "idx_lms_courses_certification_category"),
        ],
        9: [
            CreateTable("sync_checkpoints"),
            CreateTable("sync_task_locks"),
            SeedAdminProfiles(),
        ],
    }


# Runner -----------------------------------------------------------------------


class MigrationRunner:
    def __init__(
        self,
        engine: Engine | None = None,
        *,
        metadata: MetaData | None = None,
        migrations: Mapping[int, Sequence[Operation]] | None = None,
        scheduled_tasks_path: str | Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.engine = engine if engine is not None else db.engine
        self.metadata = metadata if metadata is not None else db.metadata
        self.migrations = dict(
            sorted((migrations or default_migrations(scheduled_tasks_path=scheduled_tasks_path)).items())
        )
        self.logger = logger or (current_app.logger if has_app_context() else logging.getLogger(__name__))

    @classmethod
    def from_app(cls, app=None, **kwargs) -> "MigrationRunner":
        app = app or current_app
        kwargs.setdefault("scheduled_tasks_path", app.config.get("SYNC_SCHEDULED_TASKS_PATH"))
        with app.app_context():
            engine = db.engine
        return cls(engine, logger=app.logger, **kwargs)

    @property
    def latest_version(self) -> int:
        return max(self.migrations) if self.migrations else 0

    def current_version(self) -> int:
        with self.engine.connect() as connection:
            if not inspect(connection).has_table(SchemaInfo.__tablename__):
                return 0
            version = connection.execute(
                select(SchemaInfo.__table__.c.version).where(SchemaInfo.__table__.c.id == SCHEMA_INFO_ID)
            ).scalar()
        return int(version or 0)

    def pending(self) -> list[int]:
        current = self.current_version()
        return [version for version in self.migrations if version > current]

    def apply_version(self, version: int, *, dry_run: bool = False) -> list[OperationReport]:
        """Run every operation of ``version``; the schema version row is not touched."""
        if version not in self.migrations:
            raise MigrationError(f"Unknown migration version {version}.", version=version)
        reports = []
        for operation in self.migrations[version]:
            reports.append(self._apply_operation(version, operation, dry_run=dry_run))
        return reports

    def run(self, *, target: int | None = None, dry_run: bool = False) -> MigrationReport:
        current = self.current_version()
        target = self.latest_version if target is None else target
        report = MigrationReport(from_version=current, to_version=current, dry_run=dry_run)
        versions = [version for version in self.migrations if current < version <= target]
        if not versions:
            self.logger.info("Schema is up to date", extra={"sync_schema_version": current})
            return report

        self.logger.info(
            "Running schema migrations",
            extra={"sync_schema_from": current, "sync_schema_to": versions[-1], "sync_dry_run": dry_run},
        )
        for version in versions:
            report.operations.extend(self.apply_version(version, dry_run=dry_run))

        if dry_run:
            return report
        self._write_version(versions[-1])
        report.to_version = versions[-1]
        record_schema_version(versions[-1])
        self.logger.info(
            "Schema migrations complete",
            extra={
                "sync_schema_version": versions[-1],
                "sync_operations_applied": len(report.applied),
                "sync_operations_skipped": len(report.skipped),
            },
        )
        return report

    def _apply_operation(self, version: int, operation: Operation, *, dry_run: bool) -> OperationReport:
        description = operation.describe()
        try:
            with self.engine.begin() as connection:
                result = operation.apply(connection, self.metadata, dry_run=dry_run)
        except MigrationError as exc:
            exc.version = exc.version or version
            exc.operation = exc.operation or description
            self.logger.error(
                "Migration operation failed",
                extra={"sync_schema_version": version, "sync_operation": description, "sync_error": str(exc)},
            )
            raise
        except (SQLAlchemyError, OSError, ValueError, KeyError, yaml.YAMLError) as exc:
            if operation.critical:
                self.logger.exception(
                    "Migration operation failed",
                    extra={"sync_schema_version": version, "sync_operation": description},
                )
                raise MigrationError(
                    f"Migration v{version} failed at '{description}': {exc}",
                    version=version,
                    operation=description,
                ) from exc
            self.logger.warning(
                "Non-critical migration operation skipped",
                extra={"sync_schema_version": version, "sync_operation": description, "sync_error": str(exc)},
            )
            return OperationReport(version, description, OperationResult.SKIPPED, detail=str(exc))

        self.logger.debug(
            "Migration operation finished",
            extra={"sync_schema_version": version, "sync_operation": description, "sync_result": result.value},
        )
        return OperationReport(version, description, result)

    def _write_version(self, version: int) -> None:
        table = SchemaInfo.__table__
        with self.engine.begin() as connection:
            if not inspect(connection).has_table(table.name):
                table.create(connection)
            updated = connection.execute(
                table.update().where(table.c.id == SCHEMA_INFO_ID).values(version=version, updated_at=utcnow())
            ).rowcount
            if not updated:
                connection.execute(table.insert().values(id=SCHEMA_INFO_ID, version=version, updated_at=utcnow()))
