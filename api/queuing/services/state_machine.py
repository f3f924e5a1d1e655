from datetime import datetime

TERMINAL_STATUSES = frozenset({"MATCHED", "REMOVED", "EXPIRED"})

_ACTION_TARGETS = {
    "match": "MATCHED",
    "leave": "REMOVED",
    "expire": "EXPIRED",
}


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return expires_at < now


def transition_status(current: str, action: str, now: datetime, expires_at: datetime) -> str:
    if current in TERMINAL_STATUSES:
        return current

    if current != "WAITING":
        return current

    # An entry past its TTL can only expire, even if a match or leave races the sweep.
    if is_expired(expires_at, now) and action != "leave":
        return "EXPIRED"

    return _ACTION_TARGETS.get(action, current)
