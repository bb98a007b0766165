"""Shared data models for the integrity pipeline and the sync queue."""

from __future__ import annotations

import base64
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class Phase(str, Enum):
    """Pipeline states, in the only order they may be visited."""

    TRANSCODING = "transcoding"
    EXTRACTING_METADATA = "extracting-metadata"
    COMPRESSING = "compressing"
    HASHING = "hashing"
    STAMPING = "stamping"
    UPLOADING = "uploading"
    DONE = "done"
    ERROR = "error"


class DocType(str, Enum):
    DLL = "DLL"
    ISP = "ISP"
    ISR = "ISR"
    UNKNOWN = "Unknown"


class Language(str, Enum):
    ENGLISH = "English"
    FILIPINO = "Filipino"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class SourceFile:
    """Raw input as handed over by the caller."""

    name: str
    data: bytes = field(repr=False)

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower().lstrip(".")

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def stem(self) -> str:
        return Path(self.name).stem

    @classmethod
    def from_path(cls, path: Path) -> "SourceFile":
        return cls(name=path.name, data=path.read_bytes())


@dataclass(frozen=True)
class ContentElement:
    """One styled paragraph between markup and page layout."""

    text: str
    bold: bool = False
    italic: bool = False
    heading: bool = False


@dataclass(frozen=True)
class TranscodeResult:
    pdf_bytes: bytes = field(repr=False)
    text: Optional[str] = None


@dataclass
class DocMetadata:
    """Advisory signals recovered from document text."""

    doc_type: DocType = DocType.UNKNOWN
    week_number: Optional[int] = None
    school_year: Optional[str] = None
    subject: Optional[str] = None
    grade_level: Optional[str] = None
    language: Language = Language.UNKNOWN
    school: Optional[str] = None
    teacher: Optional[str] = None
    confidence: float = 0.0
    raw_text: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["doc_type"] = self.doc_type.value
        data["language"] = self.language.value
        return data


@dataclass(frozen=True)
class UploadOptions:
    """User-entered submission fields. These always win over extracted metadata."""

    user_id: str
    doc_type: Optional[str] = None
    week_number: Optional[int] = None
    school_year: Optional[str] = None
    subject: Optional[str] = None
    calendar_id: Optional[str] = None
    teaching_load_id: Optional[str] = None

    def with_metadata(self, metadata: DocMetadata) -> "UploadOptions":
        """Fill the fields the user left empty from *metadata*."""
        doc_type = self.doc_type
        if doc_type is None and metadata.doc_type is not DocType.UNKNOWN:
            doc_type = metadata.doc_type.value
        return replace(
            self,
            doc_type=doc_type,
            week_number=self.week_number if self.week_number is not None else metadata.week_number,
            school_year=self.school_year or metadata.school_year,
            subject=self.subject or metadata.subject,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UploadOptions":
        return cls(
            user_id=str(data["user_id"]),
            doc_type=data.get("doc_type"),
            week_number=data.get("week_number"),
            school_year=data.get("school_year"),
            subject=data.get("subject"),
            calendar_id=data.get("calendar_id"),
            teaching_load_id=data.get("teaching_load_id"),
        )


@dataclass(frozen=True)
class QueueItem:
    """A self-contained upload request waiting for connectivity."""

    file_name: str
    file_path: str
    file_hash: str
    file_size: int
    pdf_bytes: bytes = field(repr=False)
    options: UploadOptions
    timestamp: int
    stamped_hash: Optional[str] = None

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_hash": self.file_hash,
            "file_size": self.file_size,
            "pdf_b64": base64.b64encode(self.pdf_bytes).decode("ascii"),
            "options": self.options.to_dict(),
            "timestamp": self.timestamp,
            "stamped_hash": self.stamped_hash,
        }

    @classmethod
    def from_json_dict(cls, data: dict[str, Any]) -> "QueueItem":
        return cls(
            file_name=str(data["file_name"]),
            file_path=str(data["file_path"]),
            file_hash=str(data["file_hash"]),
            file_size=int(data["file_size"]),
            pdf_bytes=base64.b64decode(data["pdf_b64"], validate=True),
            options=UploadOptions.from_dict(data["options"]),
            timestamp=int(data["timestamp"]),
            stamped_hash=data.get("stamped_hash"),
        )


@dataclass(frozen=True)
class PipelineEvent:
    """Progress notification; the caller owns any accumulated log."""

    phase: Phase
    progress: int
    message: str
    metadata: Optional[DocMetadata] = None
    error: Optional[str] = None
    result: Optional["PipelineResult"] = None


@dataclass
class PipelineResult:
    """Terminal outcome of one pipeline run."""

    file_name: str
    status: str = "pending"  # uploaded | duplicate | queued | error
    file_path: str = ""
    fingerprint: str = ""
    stamped_hash: str = ""
    verify_url: str = ""
    original_size: int = 0
    final_size: int = 0
    pdf_bytes: bytes = field(default=b"", repr=False)
    metadata: Optional[DocMetadata] = None
    error: Optional[str] = None
    elapsed_s: float = 0.0


@dataclass
class DrainResult:
    success: int = 0
    failed: int = 0
    duplicates: int = 0
    ghosts: int = 0
