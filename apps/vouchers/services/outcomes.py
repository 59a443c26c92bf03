"""
Per-item results of reconciling offline redemption intents.

Each intent in a sync batch yields exactly one of ``Synced``, ``Conflict`` or
``Failed``. ``Failed`` is reported on the wire with status ``error``.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import ClassVar, List, Optional, Union

from apps.vouchers.models import SyncResult


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class _Outcome:
    status: ClassVar[str]

    def as_dict(self) -> dict:
        data = {'status': self.status}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is not None:
                data[f.name] = _jsonable(value)
        return data


@dataclass(frozen=True)
class Synced(_Outcome):
    local_id: str
    voucher_code: str
    redemption_id: str
    server_timestamp: datetime

    status: ClassVar[str] = SyncResult.SYNCED.value


@dataclass(frozen=True)
class Conflict(_Outcome):
    """The voucher was already redeemed by another local_id."""

    local_id: str
    voucher_code: str
    reason: str
    server_timestamp: Optional[datetime] = None
    cafeteria_id: Optional[int] = None
    device_id: Optional[str] = None
    local_timestamp: Optional[datetime] = None

    status: ClassVar[str] = SyncResult.CONFLICT.value


@dataclass(frozen=True)
class Failed(_Outcome):
    local_id: str
    voucher_code: str
    reason: str
    message: str = ''

    status: ClassVar[str] = SyncResult.ERROR.value


SyncOutcome = Union[Synced, Conflict, Failed]


@dataclass
class SyncBatchReport:
    device_id: str
    results: List[SyncOutcome] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return any(isinstance(r, Conflict) for r in self.results)

    def summary(self) -> dict:
        counts = {'total': len(self.results), 'synced': 0, 'conflicts': 0, 'errors': 0}
        for result in self.results:
            if isinstance(result, Synced):
                counts['synced'] += 1
            elif isinstance(result, Conflict):
                counts['conflicts'] += 1
            else:
                counts['errors'] += 1
        return counts

    def as_dict(self) -> dict:
        return {
            'device_id': self.device_id,
            'summary': self.summary(),
            'results': [r.as_dict() for r in self.results],
        }
