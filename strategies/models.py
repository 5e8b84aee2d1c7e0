from django.core.validators import MinValueValidator
from django.db import models

from core.models import TimeStampedModel


class Strategy(TimeStampedModel):
    name = models.CharField(max_length=64, unique=True)
    provider = models.CharField(
        max_length=255,
        default="strategies.providers.NoopDecisionProvider",
        help_text="Dotted path of the decision provider class.",
    )
    params = models.JSONField(default=dict, blank=True)
    symbols = models.JSONField(default=list, blank=True, help_text="Whitelisted symbols, e.g. [\"BTCUSDT\"].")
    enabled = models.BooleanField(default=True)
    interval_seconds = models.PositiveIntegerField(default=60, validators=[MinValueValidator(1)])
    leverage = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    order_notional_usdt = models.DecimalField(
        max_digits=18,
        decimal_places=8,
        default=10,
        help_text="Margin committed per entry; notional is this times leverage.",
    )
    take_profit_pct = models.DecimalField(max_digits=8, decimal_places=6, null=True, blank=True)
    stop_loss_pct = models.DecimalField(max_digits=8, decimal_places=6, null=True, blank=True)
    allow_stacking = models.BooleanField(
        default=False,
        help_text="Open a new bracket even if the symbol already has a live position.",
    )
    max_runs = models.PositiveIntegerField(default=0, help_text="0 = unlimited; strategy disables itself when reached.")
    run_count = models.PositiveIntegerField(default=0)
    last_run_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["id"]
        indexes = [
            models.Index(fields=["enabled", "last_run_at"], name="strat_enabled_lastrun_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.name} ({'on' if self.enabled else 'off'})"

    @property
    def wants_bracket(self) -> bool:
        return bool(self.take_profit_pct) or bool(self.stop_loss_pct)


class StrategyRun(TimeStampedModel):
    class Status(models.TextChoices):
        RUNNING = "running", "Running"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        ABANDONED = "abandoned", "Abandoned"

    class Trigger(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        MANUAL = "manual", "Manual"

    strategy = models.ForeignKey(Strategy, on_delete=models.CASCADE, related_name="runs")
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.RUNNING)
    trigger = models.CharField(max_length=12, choices=Trigger.choices, default=Trigger.SCHEDULED)
    started_at = models.DateTimeField()
    finished_at = models.DateTimeField(null=True, blank=True)
    symbols_evaluated = models.PositiveIntegerField(default=0)
    orders_submitted = models.PositiveIntegerField(default=0)
    orders_failed = models.PositiveIntegerField(default=0)
    error = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-started_at"]
        indexes = [
            models.Index(fields=["status", "started_at"], name="strat_run_status_started_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"run {self.pk} {self.strategy_id} {self.status}"
