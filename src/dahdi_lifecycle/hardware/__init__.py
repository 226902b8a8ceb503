"""
Hardware package initialization.
Contains telephony card discovery and span assignment.
"""

from .discovery import (
    DRIVER_SIGNATURES,
    HardwareDevice,
    HardwareDiscovery,
    parse_hardware_listing,
)
from .spans import (
    SpanAssignment,
    SpanAssignmentResolver,
    SpanDeclaration,
    parse_span_declarations,
)

__all__ = [
    'DRIVER_SIGNATURES',
    'HardwareDevice',
    'HardwareDiscovery',
    'parse_hardware_listing',
    'SpanAssignment',
    'SpanAssignmentResolver',
    'SpanDeclaration',
    'parse_span_declarations',
]
