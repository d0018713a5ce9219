"""
Security helpers shared by logging and the HTTP surface.
"""
from dashboard_agent.security.pii_redactor import (
    PIIRedactionFilter,
    redact_pii
)

__all__ = [
    'PIIRedactionFilter',
    'redact_pii'
]
