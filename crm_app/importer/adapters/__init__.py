"""Importer source adapters."""

from __future__ import annotations

from .csv_contacts import (
    CSVAdapterError,
    CSVHeaderError,
    CSVSourceError,
    ContactCSVDecoder,
    DecodedRow,
    DecoderStatistics,
    detect_delimiter,
)

__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "CSVSourceError",
    "ContactCSVDecoder",
    "DecodedRow",
    "DecoderStatistics",
    "detect_delimiter",
]
