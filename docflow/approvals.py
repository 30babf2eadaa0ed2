"""Approval quorum rules.

``single`` steps accept a decision from whoever the surrounding system lets
act on the step; the ``approvers`` list is only used to address requests.
``sequential``, ``parallel`` and ``majority`` steps treat ``approvers`` as the
exact set of identities whose decisions count.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Sequence

from .errors import ApprovalError
from .models import ApprovalConfig, ApprovalRecord

QuorumState = Literal["approved", "rejected", "pending"]


def effective_approvers(config: ApprovalConfig, records: Sequence[ApprovalRecord]) -> List[str]:
    """Configured approvers with delegations applied, in listed order."""
    approvers = list(config.approvers)
    for record in records:
        if record.decision == "delegated" and record.delegated_to:
            approvers = [
                record.delegated_to if approver == record.approver_id else approver
                for approver in approvers
            ]
    return approvers


def required_approvals(config: ApprovalConfig, approvers: Sequence[str]) -> int:
    if config.approval_type == "majority":
        return len(approvers) // 2 + 1
    if config.approval_type in ("parallel", "sequential"):
        return len(approvers)
    return 1


def _uses_roster(config: ApprovalConfig) -> bool:
    return config.approval_type != "single" and bool(config.approvers)


def _decided(records: Sequence[ApprovalRecord], decision: str, roster: Sequence[str]) -> set[str]:
    return {
        record.approver_id
        for record in records
        if record.decision == decision and record.approver_id in roster
    }


def check_eligible(
    config: ApprovalConfig,
    records: Sequence[ApprovalRecord],
    approver_id: str,
    decision: str,
    delegated_to: Optional[str] = None,
) -> None:
    """Raise :class:`ApprovalError` if ``approver_id`` may not decide now."""
    if decision == "delegated" and delegated_to == approver_id:
        raise ApprovalError(f"{approver_id} cannot delegate to themselves")
    if not _uses_roster(config):
        return

    approvers = effective_approvers(config, records)
    if approver_id not in approvers:
        raise ApprovalError(f"{approver_id} is not an approver for this step")
    # two roster seats held by one person could never both be filled
    if decision == "delegated" and delegated_to in approvers:
        raise ApprovalError(f"{delegated_to} is already an approver for this step")

    if approver_id in _decided(records, "approved", approvers) | _decided(
        records, "rejected", approvers
    ):
        raise ApprovalError(f"{approver_id} has already decided on this step")

    if config.approval_type == "sequential" and decision != "delegated":
        approved = _decided(records, "approved", approvers)
        next_up = next((a for a in approvers if a not in approved), None)
        if approver_id != next_up:
            raise ApprovalError(f"Waiting on {next_up} before {approver_id} can decide")


def evaluate_quorum(config: ApprovalConfig, records: Sequence[ApprovalRecord]) -> QuorumState:
    """Decide whether the accumulated records resolve the step."""
    if not _uses_roster(config):
        for record in records:
            if record.decision in ("approved", "rejected"):
                return record.decision  # type: ignore[return-value]
        return "pending"

    approvers = effective_approvers(config, records)
    required = required_approvals(config, approvers)
    approved = _decided(records, "approved", approvers)
    rejected = _decided(records, "rejected", approvers)

    if len(approved) >= required:
        return "approved"
    # rejected once the remaining approvers can no longer reach quorum
    if len(approvers) - len(rejected) < required:
        return "rejected"
    return "pending"
