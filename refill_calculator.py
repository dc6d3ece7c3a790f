"""
Refill arithmetic: preset -> target volume/amount, limit checks, wallet hold,
and the final charge/refund once dispensing stops.

Money and volume are rounded half-up to 2 decimals.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from errors import RefillRejected
from models import (
    DispenseProgress,
    PresetKind,
    RefillLimits,
    RefillOutcome,
    RefillPreset,
    RefillQuote,
    StopReason,
)

TWO_PLACES = Decimal("0.01")

REASON_INVALID_PRICE = "invalid unit price"
REASON_BELOW_MIN_VOLUME = "below minimum volume"
REASON_BELOW_MIN_AMOUNT = "below minimum amount"
REASON_ABOVE_MAX_VOLUME = "above maximum volume"
REASON_ABOVE_MAX_AMOUNT = "above maximum amount"
REASON_INSUFFICIENT_TANK = "insufficient tank volume"
REASON_QUOTE_MISMATCH = "quote does not match current pricing"

ADVISORY_LOW_TANK = "low tank level after refill"


def _dec(value: Union[float, int, str, Decimal]) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _round2(value: Decimal) -> Decimal:
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class RefillCalculator:
    """Quotes, settles and tracks refills"""

    def __init__(self, buffer_fraction: float = 0.10, low_tank_threshold_percent: float = 20.0):
        if buffer_fraction < 0:
            raise ValueError("buffer_fraction must not be negative")
        self.buffer_fraction = _dec(buffer_fraction)
        self.low_tank_threshold_percent = _dec(low_tank_threshold_percent)
        self.logger = logging.getLogger("RefillCalculator")

    def quote(self, preset: RefillPreset, unit_price: float, limits: Optional[RefillLimits] = None) -> RefillQuote:
        limits = limits or RefillLimits()
        price = _dec(unit_price)
        if price <= 0:
            raise RefillRejected(REASON_INVALID_PRICE)

        value = _dec(preset.preset_value)
        if preset.preset_kind == PresetKind.VOLUME:
            volume, amount = value, value * price
        else:
            volume, amount = value / price, value

        # Limits apply to the exact targets; rounding is for the quote only
        if volume < _dec(limits.min_volume_litres):
            self._reject(preset, REASON_BELOW_MIN_VOLUME)
        if amount < _dec(limits.min_amount):
            self._reject(preset, REASON_BELOW_MIN_AMOUNT)
        if volume > _dec(limits.max_volume_litres):
            self._reject(preset, REASON_ABOVE_MAX_VOLUME)
        if amount > _dec(limits.max_amount):
            self._reject(preset, REASON_ABOVE_MAX_AMOUNT)

        target_volume = _round2(volume)
        target_amount = _round2(amount)

        advisories = []
        if limits.tank_available_litres is not None:
            available = _dec(limits.tank_available_litres)
            if available < volume:
                self._reject(preset, REASON_INSUFFICIENT_TANK)
            if limits.tank_capacity_litres:
                remaining_percent = (available - volume) / _dec(limits.tank_capacity_litres) * 100
                if remaining_percent < self.low_tank_threshold_percent:
                    self.logger.warning(
                        f"{preset.product}: tank would drop to {remaining_percent:.1f}% after refill"
                    )
                    advisories.append(ADVISORY_LOW_TANK)

        hold_amount = _round2(target_amount * (1 + self.buffer_fraction))

        self.logger.info(
            f"Quote {preset.product} {preset.preset_kind.value}={preset.preset_value}: "
            f"{target_volume} L / {target_amount}, hold {hold_amount}"
        )
        return RefillQuote(
            product=preset.product,
            preset_kind=preset.preset_kind,
            target_volume_litres=float(target_volume),
            target_amount=float(target_amount),
            unit_price=float(price),
            hold_amount=float(hold_amount),
            advisories=advisories,
        )

    def settle(
        self,
        quote: RefillQuote,
        actual_volume_litres: float,
        stop_reason: StopReason = StopReason.TARGET_REACHED,
    ) -> RefillOutcome:
        """Charge for what was dispensed and refund the rest of the hold"""
        if actual_volume_litres < 0:
            raise ValueError(f"Dispensed volume cannot be negative: {actual_volume_litres}")

        volume = _dec(actual_volume_litres)
        actual_amount = _round2(volume * _dec(quote.unit_price))
        refund = max(_dec(quote.hold_amount) - actual_amount, Decimal("0"))

        outcome = RefillOutcome(
            actual_volume_litres=float(_round2(volume)),
            actual_amount=float(actual_amount),
            hold_amount=quote.hold_amount,
            refund_amount=float(_round2(refund)),
            stop_reason=stop_reason,
        )
        self.logger.info(
            f"Settled {outcome.actual_volume_litres} L: charge {outcome.actual_amount}, "
            f"refund {outcome.refund_amount} ({stop_reason.value})"
        )
        return outcome

    def progress(self, quote: RefillQuote, dispensed_volume_litres: float) -> DispenseProgress:
        volume = max(_dec(dispensed_volume_litres), Decimal("0"))
        current_amount = _round2(volume * _dec(quote.unit_price))
        target_volume = _dec(quote.target_volume_litres)

        percent = min(volume / target_volume * 100, Decimal("100")) if target_volume > 0 else Decimal("100")
        hold_remaining = max(_dec(quote.hold_amount) - current_amount, Decimal("0"))

        return DispenseProgress(
            current_volume_litres=float(_round2(volume)),
            current_amount=float(current_amount),
            target_volume_litres=quote.target_volume_litres,
            target_amount=quote.target_amount,
            progress_percent=float(_round2(percent)),
            hold_remaining=float(_round2(hold_remaining)),
        )

    def _reject(self, preset: RefillPreset, reason: str):
        self.logger.warning(f"Refill rejected for {preset.product} {preset.preset_kind.value}={preset.preset_value}: {reason}")
        raise RefillRejected(reason)
