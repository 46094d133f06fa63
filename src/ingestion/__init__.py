"""Ingestion subpackage exports."""
from .location_splitter import (
    detect_locations,
    split_csv_by_location,
    LocationDetection,
)
from .normalizer import normalize_header, property_key
from .persistence import PropertyResolver, write_violations
from .pipeline import UploadPipeline, parse_upload, process_upload_job
from .storage import UploadStorage, get_upload_storage, sanitize_filename

__all__ = [
    # Location splitting
    "detect_locations",
    "split_csv_by_location",
    "LocationDetection",
    # Normalizer
    "normalize_header",
    "property_key",
    # Persistence
    "PropertyResolver",
    "write_violations",
    # Pipeline
    "UploadPipeline",
    "parse_upload",
    "process_upload_job",
    # Storage
    "UploadStorage",
    "get_upload_storage",
    "sanitize_filename",
]
