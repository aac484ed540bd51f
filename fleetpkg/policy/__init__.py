"""
fleetpkg.policy

Policy engines for fleetpkg:
  - sources: ordered allow/deny rules for download sources
  - updates: update approval, expiry and rollback state transitions

Example:
    from fleetpkg.policy import SourcePolicyEngine, is_update_ready_to_install
"""

from .sources import (
    DEFAULT_POLICIES,
    PolicyDirection,
    SourceDecision,
    SourcePolicy,
    SourcePolicyEngine,
    evaluate_policies,
)
from .updates import (
    MAX_UPDATE_FAILURES,
    approve_update,
    clear_pending_update,
    clear_rollback,
    complete_update,
    is_update_approval_expired,
    is_update_ready_to_install,
    mark_update_failed,
    needs_update_check,
    rollback,
    select_auto_update_candidates,
    set_new_version_available,
    sweep_expired_approval,
)

__all__ = [
    "DEFAULT_POLICIES",
    "PolicyDirection",
    "SourceDecision",
    "SourcePolicy",
    "SourcePolicyEngine",
    "evaluate_policies",
    "MAX_UPDATE_FAILURES",
    "approve_update",
    "clear_pending_update",
    "clear_rollback",
    "complete_update",
    "is_update_approval_expired",
    "is_update_ready_to_install",
    "mark_update_failed",
    "needs_update_check",
    "rollback",
    "select_auto_update_candidates",
    "set_new_version_available",
    "sweep_expired_approval",
]
