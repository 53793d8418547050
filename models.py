# models.py
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


def utcnow():
    return datetime.now(timezone.utc)


def new_id():
    return str(uuid.uuid4())


class RepeatInterval(str, enum.Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self):
        return self is not PaymentStatus.PENDING


class FeePreset(enum.Enum):
    NORMAL = (0, 200_000)
    FAST = (500, 250_000)
    EXPRESS = (5_000, 300_000)

    def __init__(self, micro_lamports_per_cu, compute_units):
        self.micro_lamports_per_cu = micro_lamports_per_cu
        self.compute_units = compute_units


@dataclass
class ScheduledPayment:
    recipient_address: str
    amount: Decimal
    token: str
    start_date: datetime
    repeat_interval: RepeatInterval = RepeatInterval.NONE
    recipient_name: Optional[str] = None
    memo: Optional[str] = None
    max_executions: Optional[int] = None
    id: str = field(default_factory=new_id)
    next_execution_date: Optional[datetime] = None
    current_executions: int = 0
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_executed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    paused: bool = False
    paused_reason: Optional[str] = None
    dismissed: bool = False

    def __post_init__(self):
        if self.next_execution_date is None:
            self.next_execution_date = self.start_date

    @property
    def bounded(self):
        return self.max_executions is not None


@dataclass
class PendingTransaction:
    to_address: str
    amount: Decimal
    memo: Optional[str] = None
    fee_preset: FeePreset = FeePreset.NORMAL
    token: str = "SOL"
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    retries: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class JobConstraints:
    requires_network: bool = True


@dataclass
class Job:
    name: str
    kind: str       # schedule | outbox_drain
    run_at: datetime
    target_id: Optional[str] = None
    attempt: int = 0
    requires_network: bool = True
    generation: int = 1
    worker_id: Optional[str] = None
    lease_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
