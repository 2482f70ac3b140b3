"""Shared utility functions and models for the BondApp sync layer.

Convenience re-exports so consumers can import directly from
``bondapp.utils`` while full absolute imports remain supported.
"""

from bondapp.utils.audit import AuditEvent, log_audit_event
from bondapp.utils.general import clone_collection, convert_to_json_safe

__all__ = [
    "AuditEvent",
    "clone_collection",
    "convert_to_json_safe",
    "log_audit_event",
]
