"""
Extension points registered once when the engine is composed.

Subclass and pass an instance to ``build_container`` (or straight to the
component) to change eligibility or date computation without touching the
engine itself.
"""
import datetime
from typing import Optional


class EligibilityPolicy:

    def allow_transition(self, record, new_status: str) -> bool:
        """Decide status targets the built-in transition table does not know."""
        return False

    def max_failed_payments_exceeded(self, record) -> bool:
        return False


class DateComputationPolicy:

    def __init__(
        self,
        next_payment_threshold: datetime.timedelta = datetime.timedelta(hours=2),
        end_date_grace: datetime.timedelta = datetime.timedelta(hours=23),
        max_iterations: int = 3000,
        calculate_from_last_payment: bool = True,
    ) -> None:
        self.next_payment_threshold = next_payment_threshold
        self.end_date_grace = end_date_grace
        self.max_iterations = max_iterations
        self.calculate_from_last_payment = calculate_from_last_payment

    def adjust(self, date_type: str, value: Optional[datetime.datetime], record) -> Optional[datetime.datetime]:
        return value
