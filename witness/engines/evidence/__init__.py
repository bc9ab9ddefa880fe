"""
Evidence Engine

Quotes, sources and the quote-to-field links that back field verification.
"""

from witness.engines.evidence.evidence_store import EvidenceStore, field_is_supported

__all__ = [
    "EvidenceStore",
    "field_is_supported",
]
