import datetime
from typing import Callable, Dict, Optional

from recurring_billing_svc.dates import add_period, utcnow
from recurring_billing_svc.exceptions import InvalidArgument
from recurring_billing_svc.policies import DateComputationPolicy


class DateCalculator:
    """
    Pure schedule arithmetic over a subscription record.

    Given the same record fields and ``now`` every method returns the same
    result. Nothing here mutates the record or talks to storage.
    """

    def __init__(
        self,
        policy: Optional[DateComputationPolicy] = None,
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        self.policy = policy or DateComputationPolicy()
        self.clock = clock

    def calculate(self, date_type: str, record, now: Optional[datetime.datetime] = None) -> Optional[datetime.datetime]:
        calculators = {
            'next_payment_date': self.calculate_next_payment_date,
            'trial_end_date': self.calculate_trial_end_date,
            'end_of_prepaid_term_date': self.calculate_end_of_prepaid_term_date,
        }
        if date_type not in calculators:
            raise InvalidArgument(f"Cannot calculate date type: {date_type}")
        return calculators[date_type](record, now)

    def calculate_next_payment_date(self, record, now: Optional[datetime.datetime] = None) -> Optional[datetime.datetime]:
        """
        Next date a payment is due, or None when no further payment is due.

        Inside a trial the first payment is due when the trial ends. Otherwise
        one billing period is added to an anchor (see ``_payment_anchor``) and
        more periods are added until the result is at least the threshold
        (2 hours) in the future, so a daylight-saving shift never causes a
        second charge on the same day.
        """
        now = now or self.clock()
        trial_end = record.trial_end_date
        end = record.end_date

        if trial_end is not None and trial_end > now:
            next_payment = trial_end
        else:
            anchor = self._payment_anchor(record, now)
            if anchor is None:
                return None
            duration = record.payment_duration
            unit = record.payment_duration_type
            threshold = now + self.policy.next_payment_threshold

            periods = 1
            next_payment = add_period(anchor, duration, unit)
            while next_payment < threshold and periods < self.policy.max_iterations:
                periods += 1
                next_payment = add_period(anchor, duration * periods, unit)

        if end is not None and next_payment + self.policy.end_date_grace > end:
            next_payment = None

        return self.policy.adjust('next_payment_date', next_payment, record)

    def _payment_anchor(self, record, now: datetime.datetime) -> Optional[datetime.datetime]:
        start = record.start_date
        next_payment = record.next_payment_date
        last_payment = record.last_payment_date

        # A payment that fell due at the end of a trial is still owed; keep its date.
        if (
            next_payment is not None
            and next_payment < now
            and record.trial_end_date is not None
            and record.completed_payment_count < 2
        ):
            return next_payment
        if (
            self.policy.calculate_from_last_payment
            and last_payment is not None
            and start is not None
            and last_payment >= start
        ):
            return last_payment
        if next_payment is not None and start is not None and next_payment > start:
            return next_payment
        return start

    def calculate_trial_end_date(self, record, now: Optional[datetime.datetime] = None) -> Optional[datetime.datetime]:
        if record.completed_payment_count >= 2:
            return self.policy.adjust('trial_end_date', None, record)
        return self.policy.adjust('trial_end_date', self.calculate_next_payment_date(record, now), record)

    def calculate_end_of_prepaid_term_date(self, record, now: Optional[datetime.datetime] = None) -> Optional[datetime.datetime]:
        """
        Last moment the customer has already paid for.

        If a payment is still scheduled in the future the customer is paid up
        to it; if the term has already run out the answer is ``now``.
        """
        now = now or self.clock()
        next_payment = record.next_payment_date
        end = record.end_date

        if next_payment is None or end is None:
            date = None
        elif next_payment >= now:
            date = next_payment
        elif end <= now:
            date = now
        else:
            date = end
        return self.policy.adjust('end_of_prepaid_term_date', date, record)

    def calculate_initial_dates(self, record, now: Optional[datetime.datetime] = None) -> Dict[str, Optional[datetime.datetime]]:
        """Dates for a subscription that starts at ``now``."""
        now = now or self.clock()
        start = record.start_date or now
        trial_end = None
        if record.trial and record.trial_days > 0:
            trial_end = add_period(start, record.trial_days, 'day')
        next_payment = trial_end or add_period(start, record.payment_duration, record.payment_duration_type)
        return {
            'start_date': start,
            'trial_end_date': trial_end,
            'next_payment_date': next_payment,
        }
