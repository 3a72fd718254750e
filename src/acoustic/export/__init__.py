"""Export module for measurement logs.

Components:
    acoustic_log: AcousticRecord plus CSV and in-memory log sinks
"""

from src.acoustic.export.acoustic_log import (
    CSV_HEADER,
    AcousticRecord,
    CsvLogSink,
    MemoryLogSink,
    format_metric,
    log_file_name,
)

__all__ = [
    "AcousticRecord",
    "CsvLogSink",
    "MemoryLogSink",
    "CSV_HEADER",
    "format_metric",
    "log_file_name",
]
