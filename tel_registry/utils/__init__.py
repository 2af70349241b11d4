"""
TEL Utilities Module

Helper functions shared by the CLI and reports.
"""

from tel_registry.utils.helpers import (
    format_timestamp,
    truncate_hash,
    describe_payload,
)

__all__ = [
    "format_timestamp",
    "truncate_hash",
    "describe_payload",
]
