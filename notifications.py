import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdCrossed:
    user_id: int
    budget_id: int
    utilization_rate: float
    threshold: float
    occurred_at: datetime


class NotificationPort(Protocol):
    def on_budget_threshold_crossed(
        self, user_id: int, budget_id: int, utilization_rate: float
    ) -> None:  # pragma: no cover - interface
        ...


class LoggingNotifier:
    """Default transport: records the signal in the application log."""

    def on_budget_threshold_crossed(
        self, user_id: int, budget_id: int, utilization_rate: float
    ) -> None:
        logger.info(
            f"budget_threshold_crossed: user_id={user_id} budget_id={budget_id} "
            f"utilization_rate={utilization_rate:.1f}"
        )


def dispatch(port: NotificationPort, event: ThresholdCrossed) -> None:
    try:
        port.on_budget_threshold_crossed(
            event.user_id, event.budget_id, event.utilization_rate
        )
    except Exception:
        # Delivery is best effort; the budget already recorded last_sent_at.
        logger.exception(
            f"notification_failed: user_id={event.user_id} budget_id={event.budget_id}"
        )
