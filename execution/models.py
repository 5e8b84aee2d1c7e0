from django.db import models

from core.models import TimeStampedModel
from strategies.models import Strategy, StrategyRun


class ScheduledOrder(TimeStampedModel):
    class Side(models.TextChoices):
        BUY = "buy", "Buy"
        SELL = "sell", "Sell"

    class Kind(models.TextChoices):
        MARKET = "market", "Market"
        LIMIT = "limit", "Limit"
        TAKE_PROFIT = "take_profit", "Conditional Take Profit"
        STOP_LOSS = "stop_loss", "Conditional Stop Loss"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SUBMITTED = "submitted", "Submitted"
        UNKNOWN = "unknown", "Unknown"
        FILLED = "filled", "Filled"
        CANCELLED = "cancelled", "Cancelled"
        FAILED = "failed", "Failed"

    strategy = models.ForeignKey(
        Strategy, on_delete=models.SET_NULL, null=True, blank=True, related_name="orders"
    )
    run = models.ForeignKey(
        StrategyRun, on_delete=models.SET_NULL, null=True, blank=True, related_name="orders"
    )
    symbol = models.CharField(max_length=32)
    side = models.CharField(max_length=4, choices=Side.choices)
    kind = models.CharField(max_length=12, choices=Kind.choices)
    quantity = models.DecimalField(max_digits=28, decimal_places=10)
    price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    trigger_price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    client_order_id = models.CharField(max_length=64, unique=True)
    exchange_order_id = models.CharField(max_length=128, blank=True, default="")
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PENDING)
    status_reason = models.CharField(max_length=255, blank=True, default="")
    executed_qty = models.DecimalField(max_digits=28, decimal_places=10, default=0)
    avg_price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    parent = models.ForeignKey(
        "self", on_delete=models.SET_NULL, null=True, blank=True, related_name="children"
    )
    trigger_time = models.DateTimeField(null=True, blank=True)
    raw_response = models.JSONField(null=True, blank=True)

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["strategy", "symbol", "status"], name="exec_order_strat_sym_st_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.client_order_id} {self.symbol} {self.kind} {self.status}"

    @property
    def is_conditional(self) -> bool:
        return self.kind in (self.Kind.TAKE_PROFIT, self.Kind.STOP_LOSS)


class BracketLink(TimeStampedModel):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        CLOSING = "closing", "Closing"
        CLOSED = "closed", "Closed"
        ORPHANED = "orphaned", "Orphaned"

    class Leg(models.TextChoices):
        NONE = "", "None"
        TP = "tp", "Take Profit"
        SL = "sl", "Stop Loss"

    class CancelOutcome(models.TextChoices):
        NONE = "", "Not attempted"
        CANCELLED = "cancelled", "Cancelled"
        REJECTED = "rejected", "Rejected by exchange"
        FAILED = "failed", "Failed"
        SKIPPED = "skipped", "Skipped"

    group_id = models.CharField(max_length=32, unique=True)
    strategy = models.ForeignKey(
        Strategy, on_delete=models.SET_NULL, null=True, blank=True, related_name="brackets"
    )
    symbol = models.CharField(max_length=32)
    entry_client_id = models.CharField(max_length=64)
    tp_client_id = models.CharField(max_length=64)
    sl_client_id = models.CharField(max_length=64)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.ACTIVE)
    closed_leg = models.CharField(max_length=2, choices=Leg.choices, blank=True, default="")
    sibling_client_id = models.CharField(max_length=64, blank=True, default="")
    cancel_outcome = models.CharField(max_length=10, choices=CancelOutcome.choices, blank=True, default="")
    needs_attention = models.BooleanField(default=False)
    unresolved_polls = models.PositiveIntegerField(default=0)
    closing_started_at = models.DateTimeField(null=True, blank=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["status", "id"], name="exec_bracket_status_idx"),
            models.Index(fields=["strategy", "symbol", "status"], name="exec_bracket_strat_sym_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.group_id} {self.symbol} {self.status}"

    @property
    def client_ids(self) -> list[str]:
        return [self.entry_client_id, self.tp_client_id, self.sl_client_id]

    def leg_client_id(self, leg: str) -> str:
        return self.tp_client_id if leg == self.Leg.TP else self.sl_client_id

    def sibling_of(self, leg: str) -> str:
        return self.sl_client_id if leg == self.Leg.TP else self.tp_client_id


class ReconciliationIssue(TimeStampedModel):
    """Manual-review queue for conditions reconciliation cannot settle on its own."""

    class Kind(models.TextChoices):
        UNKNOWN_STATUS = "unknown_status", "Unknown exchange status"
        CANCEL_FAILED = "cancel_failed", "Sibling cancel failed"
        DOUBLE_EXECUTION = "double_execution", "Both legs executed"
        UNRESOLVABLE = "unresolvable", "Legs not found on exchange"
        PERSISTENCE_GAP = "persistence_gap", "Accepted orders not persisted"

    bracket = models.ForeignKey(
        BracketLink, on_delete=models.CASCADE, null=True, blank=True, related_name="issues"
    )
    kind = models.CharField(max_length=20, choices=Kind.choices)
    client_order_id = models.CharField(max_length=64, blank=True, default="")
    raw_status = models.CharField(max_length=64, blank=True, default="")
    occurrences = models.PositiveIntegerField(default=1)
    last_seen_at = models.DateTimeField()
    needs_review = models.BooleanField(default=False)
    resolved = models.BooleanField(default=False)
    details = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-last_seen_at"]
        indexes = [
            models.Index(fields=["resolved", "needs_review"], name="exec_issue_open_idx"),
            models.Index(fields=["kind", "client_order_id"], name="exec_issue_kind_cid_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.kind} {self.client_order_id} x{self.occurrences}"
