"""Document integrity pipeline with an offline sync queue.

Public API -- all symbols that tests and external code import live here.
Internally the code is split across focused submodules; this file
re-exports the stable public surface so ``from docseal import X`` works.
"""

from .compress import apply_strategies, compress_image, compress_pdf
from .connectivity import Connectivity
from .exceptions import (
    DocSealError,
    RemoteConflictError,
    RemoteError,
    RemoteLogicalError,
    RemoteNetworkError,
    TranscodeError,
    UnsupportedFormat,
)
from .integrity import fingerprint, read_embedded_fingerprint, stamp, verification_url
from .metadata import default_metadata, detect_language, extract_metadata, parse_metadata
from .models import (
    ContentElement,
    DocMetadata,
    DocType,
    DrainResult,
    Language,
    Phase,
    PipelineEvent,
    PipelineResult,
    QueueItem,
    SourceFile,
    TranscodeResult,
    UploadOptions,
)
from .orchestrator import DocumentPipeline
from .remote import (
    RemoteStore,
    RestRemoteStore,
    build_submission_record,
    derive_compliance_status,
    resolve_deadline,
)
from .store import (
    KeyValueStore,
    cache_dashboard_data,
    cache_verified_doc,
    get_cached_dashboard_data,
    lookup_offline_doc,
)
from .sync import SyncQueue, SyncScheduler
from .transcode import layout_content, markup_to_content, transcode, wrap_text
from .utils import save_manifest
from .verification import VerificationResult, verify_file, verify_fingerprint

__all__ = [
    # Models
    "SourceFile",
    "ContentElement",
    "TranscodeResult",
    "DocMetadata",
    "DocType",
    "Language",
    "UploadOptions",
    "QueueItem",
    "Phase",
    "PipelineEvent",
    "PipelineResult",
    "DrainResult",
    # Errors
    "DocSealError",
    "UnsupportedFormat",
    "TranscodeError",
    "RemoteError",
    "RemoteNetworkError",
    "RemoteLogicalError",
    "RemoteConflictError",
    # Transcoding
    "transcode",
    "markup_to_content",
    "wrap_text",
    "layout_content",
    # Metadata
    "extract_metadata",
    "parse_metadata",
    "detect_language",
    "default_metadata",
    # Compression
    "compress_pdf",
    "compress_image",
    "apply_strategies",
    # Integrity
    "fingerprint",
    "stamp",
    "verification_url",
    "read_embedded_fingerprint",
    # Remote store
    "RemoteStore",
    "RestRemoteStore",
    "derive_compliance_status",
    "resolve_deadline",
    "build_submission_record",
    # Local store and sync
    "KeyValueStore",
    "cache_verified_doc",
    "lookup_offline_doc",
    "cache_dashboard_data",
    "get_cached_dashboard_data",
    "Connectivity",
    "SyncQueue",
    "SyncScheduler",
    # Orchestration
    "DocumentPipeline",
    "VerificationResult",
    "verify_fingerprint",
    "verify_file",
    "save_manifest",
]
