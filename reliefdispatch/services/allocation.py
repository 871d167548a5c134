# reliefdispatch/services/allocation.py
"""
Assignment allocation: the only place offer stock and organization load change.

Every method here mutates shared counters, so outside of tests it is called
through DispatchScheduler, which serializes them behind one lock.
"""
import logging
from typing import List, Optional, Tuple

from reliefdispatch.core.config import Settings, settings
from reliefdispatch.core.errors import InvalidRequestError, NotFoundError
from reliefdispatch.core.states import FINAL_ASSIGNMENT_STATES, GENERAL_CATEGORY, NEED_CATEGORIES
from reliefdispatch.schemas import AidRequest, Assignment, MatchResult, Offer, Organization, utcnow
from reliefdispatch.services.matching import find_best_offers, find_best_organization

logger = logging.getLogger(__name__)


def validate_for_dispatch(request: AidRequest) -> None:
    """Raise InvalidRequestError if the request can never be dispatched as-is."""
    loc = request.location
    if loc is None:
        raise InvalidRequestError("Request has no location")
    if loc.is_null_island():
        raise InvalidRequestError("Request location is (0, 0)")
    unknown = [c for c in request.needs if c not in NEED_CATEGORIES]
    if unknown:
        raise InvalidRequestError(f"Unknown need categories: {', '.join(sorted(unknown))}")
    bad = [c for c, n in request.needs.items() if n.required and n.quantity is not None and n.quantity <= 0]
    if bad:
        raise InvalidRequestError(f"Need quantity must be positive: {', '.join(sorted(bad))}")


class Allocator:
    def __init__(self, repo, events=None, cfg: Optional[Settings] = None):
        self.repo = repo
        self.events = events
        self.cfg = cfg or settings

    async def _emit(self, type_: str, data: dict, org_id: Optional[str] = None):
        if self.events is not None:
            await self.events.emit(type_, data, org_id)

    async def _link(self, request: AidRequest, assignment: Assignment) -> None:
        await self.repo.insert_assignment(assignment)
        before = request.status
        updated = await self.repo.attach_assignment(request.id, assignment.id)
        if updated is not None:
            request.assignments = updated.assignments
            request.status = updated.status
        await self.repo.adjust_organization_load(assignment.organization_id, 1)

        await self._emit("assignment:created", {
            "assignment_id": assignment.id,
            "request_id": request.id,
            "offer_id": assignment.offer_id,
            "category": assignment.category,
            "quantity": assignment.quantity,
            "priority": assignment.priority,
        }, assignment.organization_id)
        if request.status != before:
            await self._emit("request:status_changed", {
                "request_id": request.id,
                "from": before,
                "to": request.status,
            })

    async def allocate_from_offer(
        self,
        request: AidRequest,
        offer: Offer,
        quantity: float,
    ) -> Optional[Assignment]:
        """None when the offer no longer has `quantity` left."""
        updated = await self.repo.allocate_offer(offer.id, quantity)
        if updated is None:
            logger.info("offer %s could not cover %s for request %s", offer.id, quantity, request.id)
            return None

        assignment = Assignment(
            request_id=request.id,
            offer_id=offer.id,
            organization_id=offer.organization_id,
            category=offer.category,
            quantity=quantity,
            priority=request.priority,
            method="offer-match",
            delivery_location=request.location,
            pickup_location=offer.location,
        )
        try:
            await self._link(request, assignment)
        except Exception:
            await self.release(offer.id, quantity)
            raise
        return assignment

    async def allocate_from_organization(
        self,
        request: AidRequest,
        org: Organization,
        category: Optional[str] = None,
    ) -> Assignment:
        assignment = Assignment(
            request_id=request.id,
            organization_id=org.id,
            category=category or GENERAL_CATEGORY,
            quantity=request.need(category).quantity if category else None,
            priority=request.priority,
            method="auto",
            delivery_location=request.location,
            pickup_location=org.location,
        )
        await self._link(request, assignment)
        return assignment

    async def release(self, offer_id: str, quantity: float) -> Optional[Offer]:
        return await self.repo.release_offer(offer_id, quantity)

    async def _match_category(self, request: AidRequest, category: str) -> Optional[Assignment]:
        quantity = request.need(category).quantity or 1
        offers = await find_best_offers(self.repo, request, category, quantity, self.cfg)
        if offers:
            best = offers[0]
            assignment = await self.allocate_from_offer(request, best.offer, quantity)
            if assignment is not None:
                return assignment

        cand = await find_best_organization(self.repo, request, self.cfg)
        if cand is None:
            return None
        return await self.allocate_from_organization(request, cand.organization, category)

    async def auto_match(self, request_id: str) -> MatchResult:
        try:
            request = await self.repo.get_request(request_id)
            if request is None:
                return MatchResult(success=False, message="Request not found", retryable=False)
            try:
                validate_for_dispatch(request)
            except InvalidRequestError as exc:
                return MatchResult(success=False, message=str(exc), retryable=False)

            assignments: List[Assignment] = []
            unmet: List[str] = []
            failed: List[str] = []
            errors: List[str] = []
            required = request.required_categories()
            if not required:
                cand = await find_best_organization(self.repo, request, self.cfg)
                if cand is not None:
                    assignments.append(await self.allocate_from_organization(request, cand.organization))
            else:
                for category in required:
                    try:
                        assignment = await self._match_category(request, category)
                    except Exception as exc:
                        # earlier categories are already persisted, keep going
                        logger.exception("matching %s for request %s raised", category, request_id)
                        failed.append(category)
                        errors.append(f"{category}: {exc}")
                        continue
                    if assignment is not None:
                        assignments.append(assignment)
                    else:
                        unmet.append(category)

            if not assignments:
                if errors:
                    return MatchResult(success=False, message="; ".join(errors), unmet=failed + unmet)
                return MatchResult(success=False, message="No suitable resources found", unmet=unmet)
            logger.info("request %s matched: %d assignment(s)", request_id, len(assignments))
            message = f"Created {len(assignments)} assignment(s)"
            if failed or unmet:
                message += f"; unmet: {', '.join(failed + unmet)}"
            return MatchResult(
                success=True,
                assignments=assignments,
                message=message,
                unmet=failed + unmet,
            )
        except Exception as exc:
            logger.exception("auto-match failed for request %s", request_id)
            return MatchResult(success=False, message=str(exc), retryable=True)

    async def cancel_assignment(self, assignment_id: str, reason: Optional[str] = None) -> Assignment:
        assignment = await self.repo.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment not found")
        if assignment.status in FINAL_ASSIGNMENT_STATES:
            raise InvalidRequestError(f"Assignment already {assignment.status}")

        if assignment.offer_id and assignment.quantity:
            try:
                await self.release(assignment.offer_id, assignment.quantity)
            except ValueError as exc:
                logger.warning("offer %s not released for assignment %s: %s",
                               assignment.offer_id, assignment.id, exc)
        await self.repo.adjust_organization_load(assignment.organization_id, -1)

        assignment.status = "cancelled"
        assignment.cancelled_at = utcnow()
        assignment.cancellation_reason = reason
        await self.repo.save_assignment(assignment)

        await self._emit("assignment:cancelled", {
            "assignment_id": assignment.id,
            "request_id": assignment.request_id,
            "reason": reason,
        }, assignment.organization_id)
        return assignment

    async def decline_assignment(
        self,
        assignment_id: str,
        reason: str = "Declined by organization",
    ) -> Tuple[Assignment, Optional[AidRequest]]:
        """
        Cancel, then detach from the request. A request left with no
        assignments goes back to triaged so it can be dispatched again.
        """
        assignment = await self.cancel_assignment(assignment_id, reason)
        before = await self.repo.get_request(assignment.request_id)
        request = await self.repo.detach_assignment(assignment.request_id, assignment.id)
        if request is not None and before is not None and request.status != before.status:
            await self._emit("request:status_changed", {
                "request_id": request.id,
                "from": before.status,
                "to": request.status,
            })
        return assignment, request
