"""
Durable progress checkpoints for resumable batch jobs.

A checkpoint is read once when a batch starts and written once when it ends;
it is never written per record. Reaching the end of the entity set resets
the checkpoint to zero instead of persisting a stale offset.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from partner_portal.models import SyncCheckpoint, db


@dataclass
class Checkpoint:
    offset: int = 0
    records_synced: int = 0
    fk_errors: int = 0
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_fresh(self) -> bool:
        return self.offset == 0 and self.records_synced == 0 and self.fk_errors == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "offset": self.offset,
            "records_synced": self.records_synced,
            "fk_errors": self.fk_errors,
            "payload": dict(self.payload),
        }


class CheckpointStore:
    """Load and save the checkpoint for one named batch job."""

    def __init__(self, name: str, session: Session | None = None) -> None:
        if not name:
            raise ValueError("Checkpoint name is required.")
        self.name = name
        self.session: Session = session or db.session

    def load(self) -> Checkpoint:
        """Return the persisted checkpoint, or a zero-value default."""
        row = self._row()
        if row is None:
            return Checkpoint()
        return Checkpoint(
            offset=int(row.offset or 0),
            records_synced=int(row.records_synced or 0),
            fk_errors=int(row.fk_errors or 0),
            payload=dict(row.payload_json or {}),
        )

    def save(self, checkpoint: Checkpoint) -> None:
        """Overwrite the stored checkpoint and commit."""
        if checkpoint.offset < 0:
            raise ValueError("Checkpoint offset cannot be negative.")
        row = self._row()
        if row is None:
            row = SyncCheckpoint(name=self.name)
            self.session.add(row)
        row.offset = checkpoint.offset
        row.records_synced = checkpoint.records_synced
        row.fk_errors = checkpoint.fk_errors
        row.payload_json = dict(checkpoint.payload) or None
        self.session.commit()

    def reset(self) -> Checkpoint:
        checkpoint = Checkpoint()
        self.save(checkpoint)
        return checkpoint

    def _row(self) -> SyncCheckpoint | None:
        return self.session.query(SyncCheckpoint).filter(SyncCheckpoint.name == self.name).one_or_none()
