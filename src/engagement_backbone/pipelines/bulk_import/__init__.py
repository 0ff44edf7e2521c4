from .processor import BulkImportProcessor, CatalogGapSink, build_import_worker
from .queue import IMPORT_QUEUE_CONFIG, BulkImportQueue
from .service import BulkImportService, ImportOptions

__all__ = [
    "BulkImportQueue",
    "BulkImportService",
    "BulkImportProcessor",
    "CatalogGapSink",
    "ImportOptions",
    "IMPORT_QUEUE_CONFIG",
    "build_import_worker",
]
