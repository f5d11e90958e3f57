"""
Approval Kernel - multi-step approval workflow engine

A generic, multi-tenant approval engine that any business activity can
attach to:
- Per-company, per-activity-type workflow templates with ordered steps
- Role, specific-person and requestor's-manager approver resolution
- Conditional and skippable steps
- Compare-and-set step transitions (one winner per step)
- Time-based auto-approval through the same approval path
- Completion callbacks dispatched to registered domain handlers
"""

__version__ = "0.1.0"
