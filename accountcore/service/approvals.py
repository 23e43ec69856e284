from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from accountcore.storage.models import Account, ApprovalStatus, Role


@dataclass
class ApprovalDecision:
    status: ApprovalStatus
    reason: Optional[str] = None


class ApprovalReader(Protocol):
    """Read-only view of the provider approval workflow owned elsewhere."""

    def get_decision(self, account: Account) -> ApprovalDecision: ...


class AccountApprovalReader:
    """Reads the approval fields stored on the account itself."""

    def get_decision(self, account: Account) -> ApprovalDecision:
        if account.role != Role.PROVIDER:
            return ApprovalDecision(ApprovalStatus.APPROVED)
        return ApprovalDecision(account.approval_status, account.rejection_reason)
