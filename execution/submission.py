"""
Order submission pipeline: decision -> entry order -> TP/SL conditional legs -> store.

Orders are submitted first and persisted afterwards. Once the exchange has accepted
anything, nothing is ever resubmitted: if the store refuses the rows, the accepted
submission is parked for reconciliation to replay.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from adapters.client import ExchangeClient
from adapters.trading_rules import TradingRulesCache
from adapters.types import MarketSnapshot, OrderAck, OrderRequest
from core import metrics
from core.errors import ExchangeRejectionError, ExchangeTransientError, PersistenceError, ValidationError
from core.notifications import notify_error, notify_manual_attention
from strategies.decision import Decision
from strategies.models import Strategy, StrategyRun

from .models import BracketLink, ScheduledOrder
from .positions import has_live_exposure
from .recovery import push_persistence_gap
from .sizing import bracket_prices, size_entry
from .status import order_status_for_ack
from .store import OrderRow, SubmissionRecord, persist_submission

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = "e"
TP_SUFFIX = "tp"
SL_SUFFIX = "sl"


def default_group_id(strategy: Strategy) -> str:
    # binance caps client order ids at 36 chars; group + "-tp" stays well under
    return f"bp{strategy.pk}-{uuid.uuid4().hex[:12]}"


def default_client_id(group_id: str, suffix: str) -> str:
    return f"{group_id}-{suffix}"


@dataclass
class SubmissionOutcome:
    record: SubmissionRecord | None = None
    link: BracketLink | None = None
    skipped: str = ""

    @property
    def submitted(self) -> bool:
        return self.record is not None


def _row_from_ack(request: OrderRequest, ack: OrderAck) -> OrderRow:
    return OrderRow(
        client_order_id=request.client_order_id,
        symbol=request.symbol,
        side=request.side,
        kind=request.kind,
        quantity=request.quantity,
        price=request.price,
        trigger_price=request.trigger_price,
        status=order_status_for_ack(ack.status),
        status_reason=f"exchange:{ack.status}" if ack.status else "",
        exchange_order_id=ack.exchange_order_id,
        executed_qty=ack.filled_qty or Decimal("0"),
        avg_price=ack.avg_price,
        raw_response=ack.raw or None,
    )


class SubmissionPipeline:
    def __init__(
        self,
        client: ExchangeClient,
        rules_cache: TradingRulesCache,
        *,
        group_id_factory: Callable[[Strategy], str] = default_group_id,
        client_id_factory: Callable[[str, str], str] = default_client_id,
    ):
        self.client = client
        self.rules_cache = rules_cache
        self.group_id_factory = group_id_factory
        self.client_id_factory = client_id_factory

    def submit(
        self,
        strategy: Strategy,
        symbol: str,
        decision: Decision,
        snapshot: MarketSnapshot,
        run: StrategyRun | None = None,
    ) -> SubmissionOutcome:
        if not decision.is_trade:
            return SubmissionOutcome(skipped="no_op")
        side = decision.action
        price = snapshot.last_price
        if price is None or price <= 0:
            raise ValidationError(f"invalid snapshot price {price}", strategy=strategy.pk, symbol=symbol)

        if not strategy.allow_stacking and has_live_exposure(symbol, strategy.pk):
            logger.info("submission skipped: live exposure strategy=%s symbol=%s", strategy.pk, symbol)
            return SubmissionOutcome(skipped="live exposure")

        rules = self.rules_cache.get(symbol)
        notional = (
            Decimal(strategy.order_notional_usdt)
            * Decimal(max(1, int(strategy.leverage or 1)))
            * Decimal(str(decision.size_multiplier))
        )
        qty = size_entry(notional, price, rules)

        group_id = self.group_id_factory(strategy)
        entry_request = OrderRequest(
            symbol=symbol,
            side=side,
            kind=ScheduledOrder.Kind.MARKET,
            quantity=qty,
            client_order_id=self.client_id_factory(group_id, ENTRY_SUFFIX),
            leverage=int(strategy.leverage or 0),
        )
        logger.info(
            "submitting entry strategy=%s symbol=%s side=%s qty=%s group=%s reason=%s",
            strategy.pk,
            symbol,
            side,
            qty,
            group_id,
            decision.reason,
        )
        entry_ack = self.client.submit_order(entry_request)
        record = SubmissionRecord(
            group_id=group_id,
            symbol=symbol,
            entry=_row_from_ack(entry_request, entry_ack),
            strategy_id=strategy.pk,
            run_id=run.pk if run is not None else None,
            create_link=False,
        )

        if record.entry.status == ScheduledOrder.Status.FAILED:
            self._persist(record)
            raise ExchangeRejectionError(
                f"entry not accepted status={entry_ack.status}",
                strategy=strategy.pk,
                symbol=symbol,
                cid=entry_request.client_order_id,
            )

        leg_errors: list[Exception] = []
        if strategy.wants_bracket:
            reference = entry_ack.avg_price if entry_ack.avg_price else price
            tp_price, sl_price = bracket_prices(
                side,
                reference,
                strategy.take_profit_pct,
                strategy.stop_loss_pct,
                rules.tick_size,
            )
            close_side = ScheduledOrder.Side.SELL if side == ScheduledOrder.Side.BUY else ScheduledOrder.Side.BUY
            for kind, suffix, trigger in (
                (ScheduledOrder.Kind.TAKE_PROFIT, TP_SUFFIX, tp_price),
                (ScheduledOrder.Kind.STOP_LOSS, SL_SUFFIX, sl_price),
            ):
                if trigger is None:
                    continue
                leg_request = OrderRequest(
                    symbol=symbol,
                    side=close_side,
                    kind=kind,
                    quantity=qty,
                    client_order_id=self.client_id_factory(group_id, suffix),
                    trigger_price=trigger,
                    reduce_only=True,
                )
                try:
                    leg_ack = self.client.submit_conditional_order(leg_request)
                except (ExchangeRejectionError, ExchangeTransientError) as exc:
                    logger.error(
                        "conditional leg failed strategy=%s symbol=%s group=%s cid=%s: %s",
                        strategy.pk,
                        symbol,
                        group_id,
                        leg_request.client_order_id,
                        exc,
                    )
                    leg_errors.append(exc)
                    continue
                record.legs.append(_row_from_ack(leg_request, leg_ack))
            has_both = record.leg(ScheduledOrder.Kind.TAKE_PROFIT) and record.leg(ScheduledOrder.Kind.STOP_LOSS)
            record.create_link = bool(has_both) and not leg_errors

        link = self._persist(record)

        if leg_errors:
            notify_manual_attention(
                "Bracket leg not placed; entry may be unprotected",
                {
                    "strategy": strategy.pk,
                    "symbol": symbol,
                    "group": group_id,
                    "entry": record.entry.client_order_id,
                    "error": str(leg_errors[0])[:300],
                },
            )
            raise leg_errors[0]

        if link is not None:
            metrics.BRACKETS_SUBMITTED.inc()
            logger.info(
                "bracket active strategy=%s symbol=%s group=%s entry=%s tp=%s sl=%s",
                strategy.pk,
                symbol,
                group_id,
                link.entry_client_id,
                link.tp_client_id,
                link.sl_client_id,
            )
        return SubmissionOutcome(record=record, link=link)

    def _persist(self, record: SubmissionRecord) -> BracketLink | None:
        try:
            return persist_submission(record)
        except PersistenceError as exc:
            ids = [record.entry.client_order_id] + [row.client_order_id for row in record.legs]
            logger.error(
                "accepted orders NOT persisted group=%s symbol=%s ids=%s: %s",
                record.group_id,
                record.symbol,
                ",".join(ids),
                exc,
            )
            push_persistence_gap(record)
            notify_error(f"persistence gap {record.group_id}", str(exc))
            raise
