"""
Approval Workflow Engine

Multi-tier approval chains with rejection cascades, requestor resubmission
and appeal, delegation overlays and a hash-chained history ledger.
"""

__version__ = "1.0.0"
