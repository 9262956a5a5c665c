"""Quota guard: admission control against the owner's page allowance."""

import logging
import math
from typing import Protocol

from sqlalchemy.orm import Session

from docbatch.models.owner_account import OwnerAccount
from docbatch.schemas.batch import AdmissionDecision

logger = logging.getLogger(__name__)

PLAN_PAGE_LIMITS = {"free": 10, "pro": 1000}
LOWEST_PLAN = "free"
COST_PER_PAGE_USD = 0.01
_BYTES_PER_PAGE = 50 * 1024


class AdmissionDenied(Exception):
    """Raised when admitting a job would exceed the owner's page allowance."""

    def __init__(self, decision: AdmissionDecision) -> None:
        self.decision = decision
        super().__init__(
            f"job needs {decision.estimated_pages} page(s) but only "
            f"{decision.pages_remaining} remain on the {decision.plan} plan"
        )


def estimate_pages(file_size: int) -> int:
    """Rough pre-processing page estimate: one page per 50 KiB, at least one for any content."""
    if file_size <= 0:
        return 0
    return max(1, math.ceil(file_size / _BYTES_PER_PAGE))


class UsageLedger(Protocol):
    def plan_for(self, owner_id: str, db: Session) -> str: ...

    def get_remaining_pages(self, owner_id: str, db: Session) -> int: ...

    def debit_pages(self, owner_id: str, pages: int, db: Session) -> bool: ...


class SqlUsageLedger:
    """Usage ledger backed by the owner_accounts table.

    Never commits: debits join the caller's transaction so they land together with the
    file status change that earned them.
    """

    def plan_for(self, owner_id: str, db: Session) -> str:
        account = db.get(OwnerAccount, owner_id)
        return account.plan if account is not None else LOWEST_PLAN

    def get_remaining_pages(self, owner_id: str, db: Session) -> int:
        account = db.get(OwnerAccount, owner_id)
        plan = account.plan if account is not None else LOWEST_PLAN
        used = account.pages_used if account is not None else 0
        return max(0, PLAN_PAGE_LIMITS.get(plan, PLAN_PAGE_LIMITS[LOWEST_PLAN]) - used)

    def debit_pages(self, owner_id: str, pages: int, db: Session) -> bool:
        account = (
            db.query(OwnerAccount)
            .filter(OwnerAccount.owner_id == owner_id)
            .with_for_update()
            .first()
        )
        if account is None:
            account = OwnerAccount(owner_id=owner_id, plan=LOWEST_PLAN, pages_used=0)
            db.add(account)
            db.flush()
        limit = PLAN_PAGE_LIMITS.get(account.plan, PLAN_PAGE_LIMITS[LOWEST_PLAN])
        if account.pages_used + pages > limit:
            logger.warning(
                "debit denied for owner %s: %d page(s) requested, %d/%d used",
                owner_id,
                pages,
                account.pages_used,
                limit,
            )
            return False
        account.pages_used += pages
        return True


class QuotaGuard:
    def __init__(self, ledger: UsageLedger | None = None) -> None:
        self._ledger: UsageLedger = ledger or SqlUsageLedger()

    def check(self, owner_id: str, estimated_pages: int, db: Session) -> AdmissionDecision:
        """Return the admission decision for *estimated_pages* without side effects."""
        remaining = self._ledger.get_remaining_pages(owner_id, db)
        plan = self._ledger.plan_for(owner_id, db)
        allowed = estimated_pages <= remaining
        return AdmissionDecision(
            allowed=allowed,
            pages_remaining=remaining,
            requires_upgrade=not allowed and plan == LOWEST_PLAN,
            estimated_pages=estimated_pages,
            plan=plan,
            estimated_cost_usd=round(estimated_pages * COST_PER_PAGE_USD, 4),
        )

    def admit(self, owner_id: str, estimated_pages: int, db: Session) -> AdmissionDecision:
        """Like check(), but raises AdmissionDenied when the job may not be created."""
        decision = self.check(owner_id, estimated_pages, db)
        if not decision.allowed:
            logger.info(
                "admission denied for owner %s: %d page(s) estimated, %d remaining",
                owner_id,
                estimated_pages,
                decision.pages_remaining,
            )
            raise AdmissionDenied(decision)
        return decision

    def record_usage(self, owner_id: str, pages: int, db: Session) -> bool:
        """Debit *pages* actually processed for *owner_id*. Returns False if the ledger refused."""
        if pages <= 0:
            return True
        return self._ledger.debit_pages(owner_id, pages, db)
