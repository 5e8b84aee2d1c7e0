from prometheus_client import Counter

STRATEGY_RUNS = Counter(
    "bracketpilot_strategy_runs_total",
    "Strategy evaluation runs by outcome",
    ["outcome"],
)
STRATEGY_TICKS_SKIPPED = Counter(
    "bracketpilot_strategy_ticks_skipped_total",
    "Strategy ticks skipped because a lease was held or unavailable",
)
BRACKETS_SUBMITTED = Counter(
    "bracketpilot_brackets_submitted_total",
    "Bracket groups accepted by the exchange and persisted",
)
BRACKETS_CLOSED = Counter(
    "bracketpilot_brackets_closed_total",
    "Brackets closed by triggered leg",
    ["leg"],
)
BRACKETS_ORPHANED = Counter(
    "bracketpilot_brackets_orphaned_total",
    "Brackets marked orphaned",
)
SIBLING_CANCEL_FAILURES = Counter(
    "bracketpilot_sibling_cancel_failures_total",
    "Sibling leg cancellations that did not succeed",
)
UNKNOWN_EXCHANGE_STATUS = Counter(
    "bracketpilot_unknown_exchange_status_total",
    "Exchange status strings not present in the mapping table",
)
