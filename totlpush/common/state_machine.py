"""Send-log result transitions enforced by the idempotency ledger.

A row is born `pending` by a successful claim and is moved exactly once to a
terminal result. `suppressed_duplicate` is never written to a row: it is the
outcome reported to the losing claimant, whose key is owned by another row.
"""

TERMINAL_RESULTS: frozenset[str] = frozenset(
    {
        "accepted",
        "failed",
        "suppressed_preference",
        "suppressed_cooldown",
        "suppressed_quiet_hours",
        "suppressed_muted",
        "suppressed_rollout",
        "suppressed_unsubscribed",
    }
)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": TERMINAL_RESULTS,
    **{result: frozenset() for result in TERMINAL_RESULTS},
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
