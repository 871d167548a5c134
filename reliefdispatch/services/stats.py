# reliefdispatch/services/stats.py
from collections import Counter

from reliefdispatch.core.states import PENDING_STATES


async def compute_unmet_demand(repo):
    """
    Summary of requests still waiting for help (new / triaged).
    Repo must implement find_requests(statuses).
    """
    pending = await repo.find_requests(PENDING_STATES)

    by_category = Counter()
    quantities = Counter()
    by_priority = Counter()
    for req in pending:
        by_priority[req.priority] += 1
        for cat in req.required_categories():
            by_category[cat] += 1
            qty = req.need(cat).quantity
            if qty:
                quantities[cat] += qty

    return {
        "pending_requests": len(pending),
        "total_beneficiaries": sum(r.beneficiaries.total for r in pending),
        "by_priority": dict(by_priority),
        "by_category": dict(by_category),
        "quantities": dict(quantities),
    }
