"""Kernel services -- persistence writers that flush, never commit."""

from grantflow_kernel.services.approval_store import SqlApprovalStore
from grantflow_kernel.services.base import BaseService

__all__ = [
    "BaseService",
    "SqlApprovalStore",
]
