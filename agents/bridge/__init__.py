"""
Bridge to the human-facing approval UI.
"""

from .approval_surface import (
    ApprovalSurface,
    BusApprovalSurface,
    Decision,
    DecisionStatus,
)
from .popup import ApprovalPopup, approve_all, ignore_all, reject_all

__all__ = [
    "ApprovalSurface",
    "BusApprovalSurface",
    "Decision",
    "DecisionStatus",
    "ApprovalPopup",
    "approve_all",
    "ignore_all",
    "reject_all",
]
