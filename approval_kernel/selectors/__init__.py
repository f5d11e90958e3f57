"""Read-only selectors for approval workflow queries."""

from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.selectors.base import BaseSelector

__all__ = ["ApprovalSelector", "BaseSelector"]
