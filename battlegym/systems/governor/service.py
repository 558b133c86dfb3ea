"""
BattleGym — Budget Governor

Answers one question before every battle start: may this battle run, and
on which model tier?

Spend is the sum of today's (UTC) ledger entries for the environment. The
governor keeps no authoritative counter of its own. The ledger is re-read
on every call.

Check-then-act across concurrent battles is closed with a reservation
pattern. admit() runs under a lock, classifies ledger spend plus the
estimates of battles already admitted, and, if admission is granted,
reserves `estimated_battle_cost_usd`. settle() appends the real cost to
the ledger and then drops the reservation. Overshoot is therefore bounded
by the gap between estimated and real cost of in-flight battles, not by
the number of battles that raced the same check.

Reservations steer admission only. classify(), summary(), health() and
the budget alert report ledger spend, with outstanding reservations listed
beside it.

Thresholds:
  spend >= throttle_threshold_usd ($3.00)  → throttled → economy tier
  spend >= daily_cap_usd ($15.00)          → exceeded  → admission refused

The first time per UTC day the governor observes `exceeded`, it sends an
operator alert (fire-and-forget).
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import structlog

from battlegym.primitives.common import HealthStatus, ModelTier, utc_day_start, utc_now, usd
from battlegym.primitives.entities import BillingLedgerEntry
from battlegym.systems.governor.types import Admission, BudgetClassification, BudgetSummary

if TYPE_CHECKING:
    from battlegym.clients.notifier import Notifier
    from battlegym.config import BudgetConfig
    from battlegym.database.store import SandboxStore

logger = structlog.get_logger()

_ZERO = Decimal("0")


class BudgetGovernor:
    """
    Admission control against the daily spend cap.

    One instance per process. All admission decisions go through admit(),
    which is serialised by an asyncio.Lock.
    """

    def __init__(
        self,
        store: SandboxStore,
        config: BudgetConfig,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._config = config
        self._notifier = notifier
        self._clock = clock
        self._lock = asyncio.Lock()
        # reservation_id → provisional debit
        self._reservations: dict[str, Decimal] = {}
        self._alerted_on: date | None = None
        self._logger = logger.bind(system="governor")

    @property
    def environment(self) -> str:
        return self._config.environment

    @property
    def reserved(self) -> Decimal:
        return sum(self._reservations.values(), _ZERO)

    # ─── Classification ───────────────────────────────────────────

    async def classify(
        self,
        environment: str | None = None,
        include_reservations: bool = False,
    ) -> BudgetClassification:
        """
        Classify today's spend for `environment`.

        With `include_reservations`, outstanding reservations count towards
        the thresholds, so a batch in flight sees the spend it has already
        committed to. `reserved` is reported either way.
        """
        env = environment or self._config.environment
        day_start = utc_day_start(self._clock())
        spend = usd(await self._store.sum_ledger(env, day_start))
        reserved = self.reserved if env == self._config.environment else _ZERO
        effective = spend + reserved if include_reservations else spend

        cap = self._config.daily_cap_usd
        classification = BudgetClassification(
            environment=env,
            spend_today=spend,
            reserved=reserved,
            daily_cap=cap,
            throttled=effective >= self._config.throttle_threshold_usd,
            exceeded=effective >= cap,
            remaining=max(_ZERO, cap - effective),
        )
        # Alert on ledger spend only
        if spend >= cap:
            self._maybe_alert(classification, day_start.date())
        return classification

    @staticmethod
    def choose_tier(classification: BudgetClassification) -> ModelTier:
        return ModelTier.ECONOMY if classification.throttled else ModelTier.STANDARD

    # ─── Admission ────────────────────────────────────────────────

    async def admit(self) -> Admission:
        """
        Decide whether one more battle may start. On success the estimated
        battle cost is reserved until settle() or release() is called.
        """
        async with self._lock:
            classification = await self.classify(include_reservations=True)
            if classification.exceeded:
                self._logger.info(
                    "admission_refused",
                    reason="budget_exceeded",
                    spend_today=str(classification.spend_today),
                    reserved=str(classification.reserved),
                )
                return Admission(admitted=False, classification=classification)

            admission = Admission(
                admitted=True,
                tier=self.choose_tier(classification),
                reserved_usd=self._config.estimated_battle_cost_usd,
                classification=classification,
            )
            self._reservations[admission.reservation_id] = admission.reserved_usd

        self._logger.debug(
            "admission_granted",
            tier=admission.tier,
            spend_today=str(classification.spend_today),
        )
        return admission

    def release(self, admission: Admission) -> None:
        """Drop a reservation without recording spend."""
        self._reservations.pop(admission.reservation_id, None)

    async def settle(
        self,
        admission: Admission,
        cost_usd: Decimal,
        battle_id: str | None = None,
        provider: str = "openai",
        model: str | None = None,
    ) -> None:
        """Append the real cost to the ledger, then drop the reservation."""
        try:
            await self.record_spend(cost_usd, battle_id=battle_id, provider=provider, model=model)
        finally:
            self.release(admission)

    async def record_spend(
        self,
        cost_usd: Decimal,
        battle_id: str | None = None,
        provider: str = "openai",
        model: str | None = None,
    ) -> None:
        cost = usd(cost_usd)
        if cost <= _ZERO:
            return
        await self._store.append_ledger_entry(
            BillingLedgerEntry(
                environment=self._config.environment,
                provider=provider,
                model=model,
                cost_usd=cost,
                battle_id=battle_id,
                created_at=self._clock(),
            )
        )
        self._logger.debug("spend_recorded", cost_usd=str(cost), battle_id=battle_id)

    # ─── Reporting ────────────────────────────────────────────────

    async def summary(self, environment: str | None = None) -> BudgetSummary:
        env = environment or self._config.environment
        day_start = utc_day_start(self._clock())
        classification = await self.classify(env)
        breakdown = await self._store.ledger_breakdown(env, day_start)
        cap = classification.daily_cap
        percent = float(classification.spend_today / cap * 100) if cap > 0 else 100.0
        return BudgetSummary(
            environment=env,
            day_start=day_start,
            spend_today=classification.spend_today,
            daily_cap=cap,
            reserved=classification.reserved,
            remaining=classification.remaining,
            percent_used=round(percent, 1),
            throttled=classification.throttled,
            exceeded=classification.exceeded,
            breakdown=breakdown,
        )

    def _maybe_alert(self, classification: BudgetClassification, day: date) -> None:
        if self._alerted_on == day:
            return
        self._alerted_on = day
        cap = classification.daily_cap
        percent = (classification.spend_today / cap * 100) if cap > 0 else Decimal("100")
        self._logger.error(
            "budget_limit_reached",
            spend_today=str(classification.spend_today),
            daily_cap=str(cap),
        )
        if self._notifier is None:
            return
        text = (
            ":rotating_light: BUDGET LIMIT REACHED - TRAINING PAUSED\n\n"
            f"Daily Spend: ${classification.spend_today:.2f}\n"
            f"Daily Cap: ${cap:.2f}\n"
            "Training has been paused to prevent overspending."
        )
        self._notifier.notify_in_background(text, _alert_blocks(classification, percent))

    async def health(self) -> dict[str, Any]:
        classification = await self.classify()
        return {
            "status": HealthStatus.DEGRADED if classification.exceeded else HealthStatus.HEALTHY,
            "level": classification.level,
            "spend_today": str(classification.spend_today),
            "in_flight_reservations": len(self._reservations),
        }


def _alert_blocks(classification: BudgetClassification, percent: Decimal) -> list[dict[str, Any]]:
    return [
        {"type": "header", "text": {"type": "plain_text", "text": "BUDGET LIMIT REACHED"}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Daily Spend:*\n${classification.spend_today:.2f}"},
                {"type": "mrkdwn", "text": f"*Daily Cap:*\n${classification.daily_cap:.2f}"},
                {"type": "mrkdwn", "text": f"*Percentage Used:*\n{percent:.1f}%"},
                {"type": "mrkdwn", "text": "*Status:*\nTraining Paused"},
            ],
        },
    ]
