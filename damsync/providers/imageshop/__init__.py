from .client import ImageshopClient
from .duplicates import DuplicateReport, delete_remote_duplicates, duplicates_report
from .media import MediaTransfer
from .permalinks import PermalinkCache, ResolverSession
from .projector import MetadataProjector, generate_caption
from .sizes import ImageSourceResolver, SizeResolver, compute_box
from .store import Cache, JobScheduler, ObjectStore
from .sync_engine import SyncOrchestrator, SyncStartResult

__all__ = [
    "Cache",
    "DuplicateReport",
    "ImageSourceResolver",
    "ImageshopClient",
    "JobScheduler",
    "MediaTransfer",
    "MetadataProjector",
    "ObjectStore",
    "PermalinkCache",
    "ResolverSession",
    "SizeResolver",
    "SyncOrchestrator",
    "SyncStartResult",
    "compute_box",
    "delete_remote_duplicates",
    "duplicates_report",
    "generate_caption",
]
