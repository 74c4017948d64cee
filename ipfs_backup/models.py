"""
Data model for backup records and pipeline results.

BackupRecord is the unit stored in the manifest. The other classes are
results passed between pipeline components and are never persisted.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class BackupType(str, enum.Enum):
    """Kind of backup held by a record."""
    FULL = 'full'
    INCREMENTAL = 'incremental'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as an ISO-8601 UTC string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into a timezone-aware UTC datetime.

    Naive values are assumed to be UTC.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class BackupRecord:
    """A backup stored in the content store and tracked by the manifest."""

    type: BackupType
    content_address: str
    created_at: datetime
    size_bytes: int
    duration_seconds: float
    databases: List[str] = field(default_factory=list)
    local_path: str = ''
    encrypted: bool = True
    base_backup_address: Optional[str] = None
    oplog_range_start: Optional[datetime] = None
    oplog_range_end: Optional[datetime] = None

    @property
    def is_full(self) -> bool:
        return self.type == BackupType.FULL

    @property
    def is_incremental(self) -> bool:
        return self.type == BackupType.INCREMENTAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to its manifest representation."""
        data = {
            'type': self.type.value,
            'contentAddress': self.content_address,
            'createdAt': format_timestamp(self.created_at),
            'sizeBytes': self.size_bytes,
            'durationSeconds': self.duration_seconds,
            'databases': list(self.databases),
            'localPath': self.local_path or '',
            'encrypted': self.encrypted,
        }
        if self.is_incremental:
            data['baseBackupAddress'] = self.base_backup_address
            data['oplogRangeStart'] = format_timestamp(self.oplog_range_start)
            data['oplogRangeEnd'] = format_timestamp(self.oplog_range_end)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        """Create record from its manifest representation."""
        return cls(
            type=BackupType(data['type']),
            content_address=data['contentAddress'],
            created_at=parse_timestamp(data['createdAt']),
            size_bytes=int(data.get('sizeBytes') or 0),
            duration_seconds=float(data.get('durationSeconds') or 0.0),
            databases=list(data.get('databases') or []),
            local_path=data.get('localPath') or '',
            encrypted=data.get('encrypted', True),
            base_backup_address=data.get('baseBackupAddress'),
            oplog_range_start=parse_timestamp(data.get('oplogRangeStart')),
            oplog_range_end=parse_timestamp(data.get('oplogRangeEnd')),
        )


@dataclass
class DumpResult:
    """Metadata of a database dump written to a local directory."""

    output_dir: str
    duration_seconds: float
    timestamp: datetime
    databases: List[str] = field(default_factory=list)
    size_bytes: int = 0


@dataclass
class PinResult:
    """Outcome of a pin or unpin call on a single store endpoint."""

    endpoint: str
    success: bool
    error: Optional[str] = None
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'endpoint': self.endpoint, 'success': self.success}
        if self.error:
            data['error'] = self.error
        if self.note:
            data['note'] = self.note
        return data


@dataclass
class UploadResult:
    """Result of adding a file to the content store and pinning it."""

    content_address: str
    size_bytes: int
    pin_results: List[PinResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def pinned_count(self) -> int:
        return sum(1 for result in self.pin_results if result.success)


@dataclass
class PinVerification:
    """Pin presence for one content address across all endpoints."""

    content_address: str
    all_pinned: bool
    per_endpoint: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'contentAddress': self.content_address,
            'allPinned': self.all_pinned,
            'perEndpoint': self.per_endpoint,
        }


@dataclass
class BackupResult:
    """Structured result of a successful orchestration run."""

    backup_type: BackupType
    content_address: str
    size_bytes: int
    duration_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.backup_type.value,
            'contentAddress': self.content_address,
            'sizeBytes': self.size_bytes,
            'durationSeconds': self.duration_seconds,
        }


@dataclass
class ManifestStatistics:
    """Statistics derived from the records currently in the manifest."""

    total_backups: int = 0
    total_size: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalBackups': self.total_backups,
            'totalSize': self.total_size,
            'oldest': format_timestamp(self.oldest),
            'newest': format_timestamp(self.newest),
        }


@dataclass
class SweepResult:
    """Summary of a retention sweep."""

    deleted_count: int = 0
    freed_bytes: int = 0
    local_deleted_count: int = 0
    local_freed_bytes: int = 0
    errors: List[str] = field(default_factory=list)
    manifest_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'deletedCount': self.deleted_count,
            'freedBytes': self.freed_bytes,
            'localDeletedCount': self.local_deleted_count,
            'localFreedBytes': self.local_freed_bytes,
            'errors': list(self.errors),
            'manifestAddress': self.manifest_address,
        }
