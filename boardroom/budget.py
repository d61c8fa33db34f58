"""Budget governor: session, day, month, provider and model spending caps with a kill switch."""

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from config.config_loader import BudgetConfig, ModelRate
from boardroom.models import BudgetSnapshot, BudgetTier

logger = logging.getLogger(__name__)

TierListener = Callable[[BudgetTier, BudgetTier], None]
KillListener = Callable[[str], None]

_TIER_ORDER = [BudgetTier.OK, BudgetTier.WARNING, BudgetTier.CRITICAL, BudgetTier.EXCEEDED]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Reservation:
    """A held slot for one in-flight call and its pre-call cost estimate."""

    provider: str | None = None
    model: str | None = None
    estimate_usd: float = 0.0


class BudgetGovernor:
    """Tracks spend against caps and answers whether another call may start.

    Cost is only known after a call completes, so callers follow the
    sequence ``try_reserve()`` -> provider call -> ``record(cost, reservation)``
    (or ``release(reservation)`` if the call failed without usage).
    Reservations carry a worst-case estimate; a new one is refused once
    recorded spend plus everything already in flight reaches the cap, so a
    burst of concurrent calls overshoots by at most one call. Until one call
    has completed there is no observed cost to project from, so only one
    reservation is held at a time.
    """

    def __init__(self, config: BudgetConfig, clock: Callable[[], datetime] = _utc_now) -> None:
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._session_cap = config.session_cap_usd
        self._daily_cap = config.daily_cap_usd
        self._monthly_cap = config.monthly_cap_usd
        self._spent = 0.0
        self._calls = 0
        self._in_flight: list[Reservation] = []
        self._by_provider: dict[str, float] = defaultdict(float)
        self._by_model: dict[str, float] = defaultdict(float)
        self._killed = False
        now = clock()
        self._day_key = now.strftime("%Y-%m-%d")
        self._month_key = now.strftime("%Y-%m")
        self._day_spent = 0.0
        self._month_spent = 0.0
        self._tier = BudgetTier.OK
        self._tier_listeners: list[TierListener] = []
        self._kill_listeners: list[KillListener] = []

    # --- pricing -----------------------------------------------------------

    def _rate_for(self, provider: str, model: str) -> ModelRate:
        table = self._config.pricing.get(provider, {})
        if model in table:
            return table[model]
        # Dated model strings ("claude-3-5-sonnet-20241022") match their family prefix.
        prefixes = [key for key in table if model.startswith(key)]
        if prefixes:
            return table[max(prefixes, key=len)]
        return self._config.default_rate

    def estimate_cost(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> float:
        """Return the USD cost of a call from per-1K-token rates."""
        rate = self._rate_for(provider, model)
        return (input_tokens / 1000) * rate.input_per_1k + (output_tokens / 1000) * rate.output_per_1k

    # --- gating ------------------------------------------------------------

    def try_reserve(
        self,
        provider: str | None = None,
        model: str | None = None,
        estimate_usd: float = 0.0,
    ) -> Reservation | None:
        """Hold a reservation if another call may start now, else return None."""
        with self._lock:
            change = self._refresh_periods()
            reservation = self._reserve(provider, model, estimate_usd)
        if change:
            self._notify_tier(*change)
        return reservation

    def provider_capped(self, provider: str, model: str | None = None) -> bool:
        """True once ``provider`` (or ``model``) has used up its own cap."""
        with self._lock:
            return self._scope_capped(provider, model, self._spent_in_flight(provider, model))

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def release(self, reservation: Reservation) -> None:
        """Drop a reservation whose call produced no billable usage."""
        with self._lock:
            self._drop(reservation)

    def record(
        self,
        cost: float,
        reservation: Reservation | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        """Accumulate the cost of a completed call and free its reservation.

        Spend is attributed to the reservation's provider and model, or to
        ``provider``/``model`` for a call made without one.
        """
        if reservation is not None:
            provider, model = reservation.provider, reservation.model
        if cost < 0:
            raise ValueError(f"cost must be non-negative, got {cost}")
        with self._lock:
            self._roll_periods()
            if reservation is not None:
                self._drop(reservation)
            if provider is not None:
                self._by_provider[provider] += cost
                if model is not None:
                    self._by_model[model] += cost
            self._spent += cost
            self._day_spent += cost
            self._month_spent += cost
            self._calls += 1
            logger.debug("Recorded $%.6f (session total $%.4f)", cost, self._spent)
            change = self._update_tier()
        if change:
            self._notify_tier(*change)
        if provider is not None:
            self._warn_if_scope_capped(provider, model)

    def kill_switch(self, reason: str = "Manual kill switch") -> None:
        """Freeze spending at its current level and signal listeners to stop."""
        with self._lock:
            self._killed = True
            self._session_cap = self._spent
            if self._daily_cap is not None:
                self._daily_cap = self._day_spent
            if self._monthly_cap is not None:
                self._monthly_cap = self._month_spent
            change = self._update_tier()
        logger.warning("Budget kill switch triggered: %s", reason)
        if change:
            self._notify_tier(*change)
        for listener in list(self._kill_listeners):
            try:
                listener(reason)
            except Exception:
                logger.exception("Error in kill switch listener")

    def reset(self) -> None:
        """Start a fresh session ledger with the configured caps."""
        with self._lock:
            self._session_cap = self._config.session_cap_usd
            self._daily_cap = self._config.daily_cap_usd
            self._monthly_cap = self._config.monthly_cap_usd
            self._spent = 0.0
            self._calls = 0
            self._in_flight.clear()
            self._by_provider.clear()
            self._by_model.clear()
            self._killed = False
            change = self._update_tier()
        if change:
            self._notify_tier(*change)

    # --- state -------------------------------------------------------------

    @property
    def spent_usd(self) -> float:
        return self._spent

    @property
    def killed(self) -> bool:
        return self._killed

    @property
    def tier(self) -> BudgetTier:
        with self._lock:
            change = self._refresh_periods()
            tier = self._compute_tier()
        if change:
            self._notify_tier(*change)
        return tier

    def remaining_usd(self) -> float:
        return max(0.0, self._session_cap - self._spent)

    def snapshot(self) -> BudgetSnapshot:
        with self._lock:
            change = self._refresh_periods()
            snapshot = BudgetSnapshot(
                spent_usd=self._spent,
                session_cap_usd=self._session_cap,
                daily_spent_usd=self._day_spent,
                daily_cap_usd=self._daily_cap,
                monthly_spent_usd=self._month_spent,
                monthly_cap_usd=self._monthly_cap,
                tier=self._compute_tier(),
                killed=self._killed,
                calls=self._calls,
                by_provider=dict(self._by_provider),
                provider_caps=dict(self._config.provider_caps),
                by_model=dict(self._by_model),
            )
        if change:
            self._notify_tier(*change)
        return snapshot

    def subscribe(self, listener: TierListener) -> Callable[[], None]:
        """Call ``listener(old_tier, new_tier)`` on every tier change."""
        self._tier_listeners.append(listener)
        return lambda: self._tier_listeners.remove(listener)

    def on_kill(self, listener: KillListener) -> Callable[[], None]:
        self._kill_listeners.append(listener)
        return lambda: self._kill_listeners.remove(listener)

    # --- internals (callers hold the lock) ---------------------------------

    def _reserve(self, provider: str | None, model: str | None, estimate_usd: float) -> Reservation | None:
        if self._killed or self._cap_reached():
            return None
        if self._in_flight and not self._calls:
            logger.debug("Reservation deferred: no call cost observed yet")
            return None
        # in-flight calls count at their estimate, or the mean observed cost if higher
        mean_cost = self._spent / self._calls if self._calls else 0.0
        committed = self._spent + sum(max(r.estimate_usd, mean_cost) for r in self._in_flight)
        if self._in_flight and committed >= self._session_cap:
            logger.info(
                "Reservation refused: committed spend $%.4f reaches session cap $%.2f",
                committed, self._session_cap,
            )
            return None
        if provider is not None and self._scope_capped(
            provider, model, self._spent_in_flight(provider, model, mean_cost)
        ):
            logger.info("Reservation refused: %s/%s reached its own cap", provider, model)
            return None
        reservation = Reservation(provider, model, max(0.0, estimate_usd))
        self._in_flight.append(reservation)
        return reservation

    def _spent_in_flight(
        self, provider: str, model: str | None, mean_cost: float = 0.0
    ) -> tuple[float, float]:
        """(provider, model) spend including calls still in flight for them."""
        provider_total = self._by_provider.get(provider, 0.0)
        model_total = self._by_model.get(model, 0.0) if model is not None else 0.0
        for r in self._in_flight:
            pending = max(r.estimate_usd, mean_cost)
            if r.provider == provider:
                provider_total += pending
                if model is not None and r.model == model:
                    model_total += pending
        return provider_total, model_total

    def _scope_capped(self, provider: str, model: str | None, totals: tuple[float, float]) -> bool:
        provider_total, model_total = totals
        provider_cap = self._config.provider_caps.get(provider)
        if provider_cap is not None and provider_total >= provider_cap:
            return True
        model_cap = self._config.model_caps.get(model) if model is not None else None
        return model_cap is not None and model_total >= model_cap

    def _warn_if_scope_capped(self, provider: str, model: str | None) -> None:
        cap = self._config.provider_caps.get(provider)
        if cap is not None and self._by_provider.get(provider, 0.0) >= cap:
            logger.warning("Provider %s budget exceeded ($%.4f of $%.2f)", provider, self._by_provider[provider], cap)
        cap = self._config.model_caps.get(model) if model is not None else None
        if cap is not None and self._by_model.get(model, 0.0) >= cap:
            logger.warning("Model %s budget exceeded ($%.4f of $%.2f)", model, self._by_model[model], cap)

    def _drop(self, reservation: Reservation) -> None:
        for index, held in enumerate(self._in_flight):
            if held is reservation:
                del self._in_flight[index]
                return

    def _refresh_periods(self) -> tuple[BudgetTier, BudgetTier] | None:
        if self._roll_periods():
            return self._update_tier()
        return None

    def _roll_periods(self) -> bool:
        now = self._clock()
        day_key = now.strftime("%Y-%m-%d")
        month_key = now.strftime("%Y-%m")
        rolled = False
        if day_key != self._day_key:
            logger.info("Budget day rolled over: %s -> %s", self._day_key, day_key)
            self._day_key = day_key
            self._day_spent = 0.0
            if not self._killed:
                self._daily_cap = self._config.daily_cap_usd
            rolled = True
        if month_key != self._month_key:
            logger.info("Budget month rolled over: %s -> %s", self._month_key, month_key)
            self._month_key = month_key
            self._month_spent = 0.0
            if not self._killed:
                self._monthly_cap = self._config.monthly_cap_usd
            rolled = True
        return rolled

    def _cap_reached(self) -> bool:
        if self._spent >= self._session_cap:
            return True
        if self._daily_cap is not None and self._day_spent >= self._daily_cap:
            return True
        if self._monthly_cap is not None and self._month_spent >= self._monthly_cap:
            return True
        return False

    def _utilization(self) -> float:
        ratios = [_ratio(self._spent, self._session_cap)]
        if self._daily_cap is not None:
            ratios.append(_ratio(self._day_spent, self._daily_cap))
        if self._monthly_cap is not None:
            ratios.append(_ratio(self._month_spent, self._monthly_cap))
        return max(ratios)

    def _compute_tier(self) -> BudgetTier:
        if self._killed:
            return BudgetTier.EXCEEDED
        utilization = self._utilization()
        if utilization >= 1.0:
            return BudgetTier.EXCEEDED
        if utilization >= self._config.critical_threshold:
            return BudgetTier.CRITICAL
        if utilization >= self._config.warning_threshold:
            return BudgetTier.WARNING
        return BudgetTier.OK

    def _update_tier(self) -> tuple[BudgetTier, BudgetTier] | None:
        new_tier = self._compute_tier()
        old_tier = self._tier
        if new_tier == old_tier:
            return None
        self._tier = new_tier
        return old_tier, new_tier

    def _notify_tier(self, old_tier: BudgetTier, new_tier: BudgetTier) -> None:
        log = logger.warning if _TIER_ORDER.index(new_tier) > _TIER_ORDER.index(old_tier) else logger.info
        log("Budget tier changed: %s -> %s ($%.4f spent)", old_tier.value, new_tier.value, self._spent)
        for listener in list(self._tier_listeners):
            try:
                listener(old_tier, new_tier)
            except Exception:
                logger.exception("Error in budget tier listener")


def _ratio(spent: float, cap: float) -> float:
    if cap <= 0:
        return 1.0
    return spent / cap
