from snapvault.archiver.builder import ArchiveBuilder, part_filename, part_index_from_name
from snapvault.archiver.cache import EnumerationCache
from snapvault.archiver.cleanup import cleanup_stale_temp_files
from snapvault.archiver.enumerate import collect_queue, iter_entity_files
from snapvault.archiver.exclusions import ExclusionKind, ExclusionRules
from snapvault.archiver.types import ArchivePart, EnumerationResult, FileQueueEntry

__all__ = [
    "ArchiveBuilder",
    "ArchivePart",
    "EnumerationCache",
    "EnumerationResult",
    "ExclusionKind",
    "ExclusionRules",
    "FileQueueEntry",
    "cleanup_stale_temp_files",
    "collect_queue",
    "iter_entity_files",
    "part_filename",
    "part_index_from_name",
]
