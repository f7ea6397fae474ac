"""Multi-level claim approval with escalation past inactive approvers.

Every state change is written with a compare-and-swap on the claim version, so
two approvers acting on the same claim at the same time cannot both advance
it: the second write fails and is reported as :class:`StaleClaimStateError`.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime
from decimal import Decimal

from .directory import EmployeeDirectory
from .exceptions import (
    ClaimFinalizedError,
    ClaimNotFoundError,
    InvalidApprovalChainError,
    RemarksRequiredError,
    SessionNotActiveError,
    StaleClaimStateError,
    UnauthorizedApproverError,
    WriteConflictError,
)
from .logging_config import LogContext, get_logger
from .models import (
    SYSTEM_ACTOR,
    ApprovalAction,
    ApprovalChain,
    ApprovalHistoryEntry,
    ApprovalLevel,
    Claim,
    ClaimStatus,
    ClaimType,
    TripSession,
    TripStatus,
)
from .store import ClaimStore

logger = get_logger("claims")


class ClaimApprovalEngine:
    """Submit claims and move them through their approval chain."""

    def __init__(
        self,
        store: ClaimStore,
        directory: EmployeeDirectory,
        *,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self._clock = clock or (lambda: datetime.now(UTC))
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)

    # Submission

    def submit_claim(
        self,
        employee_id: str,
        claim_type: ClaimType,
        amount: Decimal,
        description: str,
        claim_date: date | None = None,
        *,
        approval_chain: ApprovalChain | None = None,
        distance_km: float | None = None,
        session_id: str | None = None,
        receipt_attached: bool = False,
    ) -> Claim:
        """Create a claim pending at the first level of the employee's chain.

        The chain is copied onto the claim; later directory changes to the
        employee's approvers do not affect it. Only approver activity is read
        from the directory afterwards.
        """

        chain = approval_chain
        if chain is None:
            employee = self.directory.get(employee_id)
            chain = employee.approval_chain if employee is not None else None
        if chain is None:
            raise InvalidApprovalChainError(
                f"Employee {employee_id} has no approval chain configured"
            )
        unknown = [
            f"{step.level.value}={step.approver_id}"
            for step in chain.steps
            if self.directory.get(step.approver_id) is None
        ]
        if unknown:
            raise InvalidApprovalChainError(
                f"Approval chain names approvers missing from the directory: {', '.join(unknown)}"
            )

        now = self._clock()
        claim = Claim(
            claim_id=self._new_id(),
            employee_id=employee_id,
            claim_type=claim_type,
            amount=amount,
            description=description,
            claim_date=claim_date or now.date(),
            submitted_at=now,
            updated_at=now,
            status=chain.first.level.pending_status,
            approval_chain=chain,
            distance_km=distance_km,
            session_id=session_id,
            receipt_attached=receipt_attached,
        )
        self.store.insert_claim(claim)
        with LogContext.bind(employee_id=employee_id, claim_id=claim.claim_id):
            logger.info(
                "Claim submitted",
                extra={"claim_type": claim_type.value, "amount": amount},
            )
        return self._escalate_after_action(claim)

    def submit_trip_claim(
        self,
        session: TripSession,
        description: str | None = None,
        *,
        approval_chain: ApprovalChain | None = None,
    ) -> Claim:
        """Submit a travel claim for a completed trip's computed expense."""

        if session.status != TripStatus.COMPLETED or session.total_expense is None:
            raise SessionNotActiveError(
                session.session_id,
                f"Trip session {session.session_id} must be completed before claiming",
            )
        return self.submit_claim(
            session.employee_id,
            ClaimType.TRAVEL,
            session.total_expense,
            description or f"Field travel {session.total_distance_km:.2f} km",
            session.start_time.date(),
            approval_chain=approval_chain,
            distance_km=session.total_distance_km,
            session_id=session.session_id,
        )

    # Actions

    def approve(
        self,
        claim_id: str,
        actor_id: str,
        remarks: str | None = None,
        *,
        expected_status: ClaimStatus | None = None,
    ) -> Claim:
        """Approve at the current level, moving to the next level or to approved."""

        claim = self._load_actionable(claim_id, expected_status)
        level = self._authorize(claim, actor_id)

        next_step = claim.approval_chain.next_after(level)
        new_status = next_step.level.pending_status if next_step else ClaimStatus.APPROVED
        updated = self._transition(
            claim,
            actor_id=actor_id,
            level=level,
            action=ApprovalAction.APPROVED,
            new_status=new_status,
            remarks=remarks,
        )
        with LogContext.bind(claim_id=claim_id, actor_id=actor_id):
            logger.info(
                "Claim approved",
                extra={"level": level.value, "new_status": new_status.value},
            )
        return self._escalate_after_action(updated)

    def reject(
        self,
        claim_id: str,
        actor_id: str,
        remarks: str,
        *,
        expected_status: ClaimStatus | None = None,
    ) -> Claim:
        """Reject the claim outright; remarks are mandatory."""

        if not remarks or not remarks.strip():
            raise RemarksRequiredError(claim_id)
        claim = self._load_actionable(claim_id, expected_status)
        level = self._authorize(claim, actor_id)

        updated = self._transition(
            claim,
            actor_id=actor_id,
            level=level,
            action=ApprovalAction.REJECTED,
            new_status=ClaimStatus.REJECTED,
            remarks=remarks,
            rejection_reason=remarks,
        )
        with LogContext.bind(claim_id=claim_id, actor_id=actor_id):
            logger.info("Claim rejected", extra={"level": level.value})
        return updated

    def escalate_if_inactive(self, claim_id: str) -> Claim:
        """Skip levels whose approver is inactive; safe to call repeatedly."""

        return self._escalate(self._load(claim_id))

    # Queries

    def get_claim(self, claim_id: str) -> Claim:
        return self._load(claim_id)

    def pending_claims_for(
        self, approver_id: str, level: ApprovalLevel | None = None
    ) -> list[Claim]:
        """Claims currently waiting on ``approver_id``, optionally at one level."""

        statuses = [level.pending_status] if level else [lvl.pending_status for lvl in ApprovalLevel]
        claims = [
            claim
            for status in statuses
            for claim in self.store.list_claims(status=status)
            if claim.current_approver == approver_id
        ]
        return sorted(claims, key=lambda item: item.submitted_at)

    def claims_for_employee(
        self, employee_id: str, status: ClaimStatus | None = None
    ) -> list[Claim]:
        claims = self.store.list_claims(employee_id=employee_id, status=status)
        return sorted(claims, key=lambda item: item.submitted_at)

    # Internals

    def _load(self, claim_id: str) -> Claim:
        claim = self.store.get_claim(claim_id)
        if claim is None:
            raise ClaimNotFoundError(claim_id)
        return claim

    def _load_actionable(self, claim_id: str, expected_status: ClaimStatus | None) -> Claim:
        claim = self._load(claim_id)
        if claim.status.is_terminal:
            raise ClaimFinalizedError(claim_id, claim.status.value)
        if expected_status is not None and claim.status != expected_status:
            raise StaleClaimStateError(claim_id, expected_status.value, claim.status.value)
        return claim

    def _authorize(self, claim: Claim, actor_id: str) -> ApprovalLevel:
        level = claim.current_level
        if level is None or actor_id != claim.current_approver:
            logger.warning(
                "Unauthorized approval attempt",
                extra={
                    "claim_id": claim.claim_id,
                    "actor_id": actor_id,
                    "level": level.value if level else None,
                },
            )
            raise UnauthorizedApproverError(
                claim.claim_id, actor_id, level.value if level else None
            )
        return level

    def _transition(
        self,
        claim: Claim,
        *,
        actor_id: str,
        level: ApprovalLevel,
        action: ApprovalAction,
        new_status: ClaimStatus,
        remarks: str | None = None,
        rejection_reason: str | None = None,
    ) -> Claim:
        now = self._clock()
        entry = ApprovalHistoryEntry(
            actor_id=actor_id,
            level=level,
            action=action,
            timestamp=now,
            remarks=remarks,
            previous_status=claim.status,
            new_status=new_status,
        )
        update: dict[str, object] = {
            "status": new_status,
            "history": (*claim.history, entry),
            "version": claim.version + 1,
            "updated_at": now,
        }
        if rejection_reason is not None:
            update["rejection_reason"] = rejection_reason
        updated = claim.model_copy(update=update)
        try:
            self.store.compare_and_swap_claim(updated, claim.version)
        except WriteConflictError as exc:
            current = self.store.get_claim(claim.claim_id)
            actual = current.status.value if current is not None else "missing"
            logger.info(
                "Claim changed concurrently; action discarded",
                extra={"claim_id": claim.claim_id, "actor_id": actor_id},
            )
            raise StaleClaimStateError(claim.claim_id, claim.status.value, actual) from exc
        return updated

    def _escalate(self, claim: Claim) -> Claim:
        while not claim.status.is_terminal:
            level = claim.current_level
            approver = claim.current_approver
            if level is None or approver is None or self.directory.is_active(approver):
                return claim

            # Only approvers the directory marks inactive are skipped; an
            # approver that has vanished from the directory stalls the claim.
            known = self.directory.get(approver) is not None
            next_step = claim.approval_chain.next_after(level) if known else None
            if next_step is None:
                last = claim.history[-1] if claim.history else None
                if (
                    last is not None
                    and last.action == ApprovalAction.ESCALATION_BLOCKED
                    and last.level == level
                ):
                    return claim
                reason = (
                    f"Approver {approver} is inactive and no further level is configured"
                    if known
                    else f"Approver {approver} is not in the employee directory"
                )
                logger.warning(
                    "Approver unavailable; claim stalled",
                    extra={"claim_id": claim.claim_id, "level": level.value, "approver": approver},
                )
                return self._transition(
                    claim,
                    actor_id=SYSTEM_ACTOR,
                    level=level,
                    action=ApprovalAction.ESCALATION_BLOCKED,
                    new_status=claim.status,
                    remarks=reason,
                )

            logger.info(
                "Claim escalated past inactive approver",
                extra={
                    "claim_id": claim.claim_id,
                    "from_level": level.value,
                    "to_level": next_step.level.value,
                },
            )
            claim = self._transition(
                claim,
                actor_id=SYSTEM_ACTOR,
                level=level,
                action=ApprovalAction.ESCALATED,
                new_status=next_step.level.pending_status,
                remarks=f"Approver {approver} is inactive",
            )
        return claim

    def _escalate_after_action(self, claim: Claim) -> Claim:
        # The caller's action is already stored; a concurrent change wins.
        try:
            return self._escalate(claim)
        except StaleClaimStateError:
            return self._load(claim.claim_id)


__all__ = ["ClaimApprovalEngine"]
