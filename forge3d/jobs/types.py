"""
Core types and data models for 3D generation jobs

Defines the durable job record, the cached result projection, the
provider status contract and the plain records returned to callers.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class InputKind(Enum):
    """Supported generation inputs"""
    TEXT = "text"
    IMAGE = "image"


class JobStatus(Enum):
    """Job state machine: pending -> processing -> {completed | failed}"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the forward-only state machine; both terminal states share the last rank."""
        return {JobStatus.PENDING: 0, JobStatus.PROCESSING: 1}.get(self, 2)


class ProviderStatus(Enum):
    """Normalized status reported by the generation provider"""
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


DEFAULT_FILE_TYPE = "obj"


@dataclass
class GenerationOptions:
    """
    Per-request provider options

    None means "use the provider default from config". Options are part of
    the cache key, so an OBJ and a GLB of the same prompt are cached apart.
    """
    result_format: Optional[str] = None
    enable_pbr: Optional[bool] = None
    face_count: Optional[int] = None
    generate_type: Optional[str] = None

    def normalized(self) -> GenerationOptions:
        result_format = (self.result_format or "").strip().upper() or None
        generate_type = (self.generate_type or "").strip() or None
        return GenerationOptions(
            result_format=result_format,
            enable_pbr=self.enable_pbr,
            face_count=self.face_count,
            generate_type=generate_type,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Only the options that are set"""
        data = {
            "result_format": self.result_format,
            "enable_pbr": self.enable_pbr,
            "face_count": self.face_count,
            "generate_type": self.generate_type,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> GenerationOptions:
        data = data or {}
        return cls(
            result_format=data.get("result_format"),
            enable_pbr=data.get("enable_pbr"),
            face_count=data.get("face_count"),
            generate_type=data.get("generate_type"),
        )


@dataclass
class ResultFile:
    """One generated artifact reference"""
    type: str
    url: str
    preview_image_url: Optional[str] = None

    def normalized(self) -> ResultFile:
        """Lower-case the type string and default it when empty."""
        file_type = (self.type or "").strip().lower() or DEFAULT_FILE_TYPE
        return ResultFile(type=file_type, url=self.url, preview_image_url=self.preview_image_url)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "url": self.url}
        if self.preview_image_url:
            data["preview_image_url"] = self.preview_image_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ResultFile:
        return cls(
            type=data.get("type", ""),
            url=data["url"],
            preview_image_url=data.get("preview_image_url"),
        )


@dataclass
class Job:
    """Durable job record owned by the job store"""
    owner_id: str
    kind: InputKind
    content: str
    fingerprint: str
    status: JobStatus = JobStatus.PENDING
    job_id: str = ""

    options: GenerationOptions = field(default_factory=GenerationOptions)
    provider_job_id: Optional[str] = None
    result_files: List[ResultFile] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def is_terminal_state(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        """Serialize job for JSON storage"""
        return {
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "content": self.content,
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "options": self.options.to_dict(),
            "provider_job_id": self.provider_job_id,
            "result_files": [f.to_dict() for f in self.result_files],
            "thumbnail_url": self.thumbnail_url,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Job:
        """Deserialize job from JSON storage"""
        return cls(
            job_id=data["job_id"],
            owner_id=data["owner_id"],
            kind=InputKind(data["kind"]),
            content=data["content"],
            fingerprint=data["fingerprint"],
            status=JobStatus(data["status"]),
            options=GenerationOptions.from_dict(data.get("options")),
            provider_job_id=data.get("provider_job_id"),
            result_files=[ResultFile.from_dict(f) for f in data.get("result_files") or []],
            thumbnail_url=data.get("thumbnail_url"),
            error_message=data.get("error_message"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            completed_at=_parse_ts(data.get("completed_at")),
        )


@dataclass
class CachedResult:
    """Projection of a completed job's result, keyed by fingerprint"""
    fingerprint: str
    result_files: List[ResultFile]
    thumbnail_url: Optional[str] = None
    source_job_id: Optional[str] = None
    provider_status: str = ProviderStatus.COMPLETED.value

    @classmethod
    def from_job(cls, job: Job) -> CachedResult:
        return cls(
            fingerprint=job.fingerprint,
            result_files=list(job.result_files),
            thumbnail_url=job.thumbnail_url,
            source_job_id=job.job_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "result_files": [f.to_dict() for f in self.result_files],
            "thumbnail_url": self.thumbnail_url,
            "source_job_id": self.source_job_id,
            "provider_status": self.provider_status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CachedResult:
        return cls(
            fingerprint=data["fingerprint"],
            result_files=[ResultFile.from_dict(f) for f in data.get("result_files") or []],
            thumbnail_url=data.get("thumbnail_url"),
            source_job_id=data.get("source_job_id"),
            provider_status=data.get("provider_status", ProviderStatus.COMPLETED.value),
        )


@dataclass
class ProviderJobStatus:
    """Provider response to a status query"""
    status: ProviderStatus
    files: List[ResultFile] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    raw_status: Optional[str] = None


@dataclass
class DispatchEnvelope:
    """In-memory handle carrying a job through the dispatch queue. Never persisted."""
    job_id: str
    enqueued_at: datetime = field(default_factory=utcnow)


@dataclass
class SubmissionResult:
    """Returned to callers of submit_text / submit_image"""
    job_id: str
    status: JobStatus
    message: str = ""
    estimated_seconds: int = 0
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "message": self.message,
            "estimated_seconds": self.estimated_seconds,
            "cached": self.cached,
        }


@dataclass
class JobStatusView:
    """Caller-facing status snapshot with derived progress"""
    job_id: str
    status: JobStatus
    progress: int
    result_files: List[ResultFile] = field(default_factory=list)
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "result_files": [f.to_dict() for f in self.result_files],
            "thumbnail_url": self.thumbnail_url,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
