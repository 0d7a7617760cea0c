"""
Grantflow Kernel - approval workflows for grant pipeline stage transitions.

Provides:
- Multi-level approval chains per organization and stage transition
- Auto-approval and self-approval policy checks
- Serialized, versioned decision recording
- Typed errors and structured logging
"""

__version__ = "0.1.0"
