import datetime
import json
from typing import Any, Dict

from sqlalchemy import Column, DateTime, Integer, String, Text

from recurring_billing_svc.models.base import Base

PENDING = 'pending'
RUNNING = 'running'
COMPLETE = 'complete'
FAILED = 'failed'
CANCELLED = 'cancelled'


def canonical_args(args: Dict[str, Any]) -> str:
    """Serialize hook arguments so equal dicts always compare equal in SQL."""
    return json.dumps(args or {}, sort_keys=True, separators=(',', ':'))


class ScheduledTask(Base):
    __tablename__ = 'scheduled_tasks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    hook = Column(String(191), nullable=False, index=True)
    args = Column(Text, nullable=False, default='{}')
    scheduled_at = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    def decoded_args(self) -> Dict[str, Any]:
        return json.loads(self.args or '{}')

    def __repr__(self) -> str:
        return f"<ScheduledTask(id={self.id}, hook={self.hook}, scheduled_at={self.scheduled_at}, status={self.status})>"
