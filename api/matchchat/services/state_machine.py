SENT = "SENT"
DELIVERED = "DELIVERED"
READ = "READ"

STATUS_ORDER = {SENT: 0, DELIVERED: 1, READ: 2}


def transition_status(current: str, action: str) -> str:
    if current not in STATUS_ORDER:
        raise ValueError(f"unknown message status: {current}")

    if action == "deliver":
        if current == SENT:
            return DELIVERED
        return current

    if action == "read":
        return READ

    return current


def is_advance(current: str, target: str) -> bool:
    return STATUS_ORDER[target] > STATUS_ORDER[current]


def statuses_advanced_by(action: str) -> list[str]:
    """Statuses that `action` moves forward; used as the guard of conditional updates."""
    return [status for status in STATUS_ORDER if is_advance(status, transition_status(status, action))]
