PRIORITIES = ["low", "medium", "high", "critical", "sos"]
URGENCIES = ["low", "medium", "high", "critical"]

NEED_CATEGORIES = [
    "rescue", "food", "water", "medical", "shelter",
    "transport", "baby_supplies", "sanitation", "power",
]
GENERAL_CATEGORY = "general"

REQUEST_STATES = [
    "new", "triaged", "assigned", "in-progress",
    "fulfilled", "closed", "cancelled",
]
# backfill scans these for requests that never got an assignment
PENDING_STATES = ["new", "triaged"]
# once a request reaches one of these the scheduler leaves it alone
SETTLED_STATES = {"assigned", "in-progress", "fulfilled", "closed", "cancelled"}
# duplicate review only looks at requests still being worked
DUPLICATE_SCAN_STATES = ["new", "triaged", "assigned"]

OFFER_STATES = ["active", "paused", "exhausted", "expired", "cancelled"]
# offers counted towards an organization's capacity ratio
LIVE_OFFER_STATES = ["active", "exhausted"]

ASSIGNMENT_STATES = [
    "new", "accepted", "rejected", "en-route", "arrived",
    "in-progress", "completed", "failed", "cancelled",
]
FINAL_ASSIGNMENT_STATES = {"completed", "cancelled"}

SEVERITIES = ["low", "medium", "high", "critical"]
# meters around a blocked segment that still counts as "on the route"
BLOCKAGE_BUFFER_M = {
    "low": 1_000.0,
    "medium": 2_000.0,
    "high": 5_000.0,
    "critical": 10_000.0,
}


def is_settled(status: str) -> bool:
    return status in SETTLED_STATES
