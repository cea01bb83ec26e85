"""Delivery state machine for one (item, platform) pair, and the retry schedule."""

import random
from enum import Enum

from tasksync.config import RetryPolicy
from tasksync.model import DeliveryAttempt


class DeliveryState(Enum):
    """
    Lifecycle of a DeliveryAttempt.

    IDLE -> PENDING -> IN_FLIGHT -> {COMMITTED | BACKOFF}
    BACKOFF -> PENDING (timer) | DEAD_LETTERED (budget exhausted)
    CANCELED marks attempts superseded by a newer event.
    """
    IDLE = "idle"
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    BACKOFF = "backoff"
    DEAD_LETTERED = "dead_lettered"
    CANCELED = "canceled"


ALLOWED_TRANSITIONS = {
    DeliveryState.IDLE: {DeliveryState.PENDING, DeliveryState.BACKOFF},
    DeliveryState.PENDING: {DeliveryState.IN_FLIGHT, DeliveryState.CANCELED},
    DeliveryState.IN_FLIGHT: {
        DeliveryState.COMMITTED,
        DeliveryState.BACKOFF,
        DeliveryState.DEAD_LETTERED,
        DeliveryState.CANCELED,
    },
    DeliveryState.BACKOFF: {
        DeliveryState.PENDING,
        DeliveryState.DEAD_LETTERED,
        DeliveryState.CANCELED,
    },
    DeliveryState.COMMITTED: set(),
    DeliveryState.DEAD_LETTERED: set(),
    DeliveryState.CANCELED: set(),
}



def transition(attempt: DeliveryAttempt, target: DeliveryState) -> None:
    """
    Move an attempt to a new state.

    Raises:
        RuntimeError: If the transition is not allowed
    """
    current = DeliveryState(attempt.state)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise RuntimeError(
            f"Illegal delivery transition {current.value} -> {target.value} "
            f"for {attempt.item_id}@{attempt.target_platform}"
        )
    attempt.state = target.value


def compute_backoff(attempt_count: int, policy: RetryPolicy, rng=random.random) -> float:
    """
    Delay before retry number `attempt_count` (1-based).

    Exponential from base_delay_s, capped at max_delay_s, then reduced
    by up to jitter_ratio so concurrent retries spread out.
    """
    if attempt_count < 1:
        raise ValueError("attempt_count starts at 1")
    exponent = min(attempt_count - 1, 32)
    delay = min(policy.max_delay_s, policy.base_delay_s * (2 ** exponent))
    return delay * (1.0 - policy.jitter_ratio * rng())
