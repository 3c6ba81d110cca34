"""Row-level changes and the typed notifications derived from them."""

from dataclasses import dataclass, field
from typing import Optional

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'
EVENT_TYPES = (INSERT, UPDATE, DELETE)


@dataclass(frozen=True)
class RowChange:
    """One committed insert/update/delete, numbered in commit order."""

    seq: int
    table: str
    type: str
    new: Optional[dict] = None
    old: Optional[dict] = None

    @property
    def row(self):
        return self.new if self.new is not None else self.old

    def to_dict(self):
        return {'seq': self.seq, 'table': self.table, 'type': self.type, 'new': self.new, 'old': self.old}


@dataclass(frozen=True)
class PhaseChanged:
    game_id: int
    phase: str
    previous: Optional[str]
    seq: int


@dataclass(frozen=True)
class ParticipantJoined:
    game_id: int
    participant: dict = field(hash=False)
    seq: int = 0
