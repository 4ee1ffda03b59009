from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List

from fulfillment.errors import InsufficientBalanceError, InvalidInputError
from fulfillment.utils import quantize_money


HUNDRED = Decimal("100")


@dataclass(frozen=True)
class DeliveryFeeInput:
    distance_km: Decimal
    base_fee: Decimal
    per_km_rate: Decimal
    min_fee: Decimal
    platform_rate: Decimal


@dataclass(frozen=True)
class DeliveryFeeBreakdown:
    delivery_fee: Decimal
    platform_commission: Decimal
    net_amount: Decimal


@dataclass(frozen=True)
class CommissionBreakdown:
    gross_amount: Decimal
    commission_amount: Decimal
    net_amount: Decimal


@dataclass(frozen=True)
class AvailableEarning:
    earning_id: int
    remaining: Decimal


@dataclass(frozen=True)
class Allocation:
    earning_id: int
    amount: Decimal
    exhausts_earning: bool


def calculate_delivery_fee(fee_input: DeliveryFeeInput) -> DeliveryFeeBreakdown:
    delivery_fee = quantize_money(
        max(fee_input.base_fee + fee_input.distance_km * fee_input.per_km_rate, fee_input.min_fee)
    )
    platform_commission = quantize_money(delivery_fee * fee_input.platform_rate / HUNDRED)
    return DeliveryFeeBreakdown(
        delivery_fee=delivery_fee,
        platform_commission=platform_commission,
        net_amount=delivery_fee - platform_commission,
    )


def calculate_seller_commission(order_amount: Decimal, rate: Decimal) -> CommissionBreakdown:
    gross = quantize_money(order_amount)
    commission = quantize_money(gross * rate / HUNDRED)
    return CommissionBreakdown(gross_amount=gross, commission_amount=commission, net_amount=gross - commission)


def calculate_delivery_bonus(total_deliveries: int, threshold: int, bonus_amount: Decimal) -> Decimal:
    if threshold <= 0 or total_deliveries <= 0:
        return Decimal("0.00")
    if total_deliveries % threshold == 0:
        return quantize_money(bonus_amount)
    return Decimal("0.00")


def allocate_payout(amount: Decimal, earnings: Iterable[AvailableEarning]) -> List[Allocation]:
    """Match a payout against available earnings, oldest first.

    An earning larger than what is still unmatched is split: only the needed
    part is allocated and the rest stays available. The allocations always sum
    to ``amount``.
    """
    if amount <= 0:
        raise InvalidInputError("Payout amount must be greater than zero.")
    earnings = list(earnings)
    total_available = sum((earning.remaining for earning in earnings), Decimal("0"))
    if total_available < amount:
        raise InsufficientBalanceError(amount, total_available)

    allocations: List[Allocation] = []
    remaining = amount
    for earning in earnings:
        if remaining <= 0:
            break
        if earning.remaining <= 0:
            continue
        portion = min(earning.remaining, remaining)
        allocations.append(
            Allocation(earning_id=earning.earning_id, amount=portion, exhausts_earning=portion == earning.remaining)
        )
        remaining -= portion
    return allocations
