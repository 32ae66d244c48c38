from dataclasses import dataclass

from pong_errors import InputValidationError


@dataclass(frozen=True)
class PriceTier:
    usd1_amount: int
    pong_allocation: int
    minor_units_value: str

    @property
    def value(self) -> int:
        return int(self.minor_units_value)


def build_tiers(
    amounts: tuple[int, ...], pong_per_usd1: int, decimals: int = 18
) -> dict[int, PriceTier]:
    return {
        amount: PriceTier(
            usd1_amount=amount,
            pong_allocation=amount * pong_per_usd1,
            minor_units_value=str(amount * 10**decimals),
        )
        for amount in amounts
    }


def tier_for_amount(tiers: dict[int, PriceTier], amount) -> PriceTier:
    # bool is an int subclass; JSON true must not select tier 1
    if isinstance(amount, bool) or not isinstance(amount, int) or amount not in tiers:
        allowed = ", ".join(str(a) for a in tiers)
        raise InputValidationError(f"Invalid amount. Must be one of {allowed} USD1")
    return tiers[amount]


def tier_for_value(tiers: dict[int, PriceTier], value: int) -> PriceTier | None:
    for tier in tiers.values():
        if tier.value == value:
            return tier
    return None


def allocation_for_value(value: int, pong_per_usd1: int, decimals: int = 18) -> int:
    return (value // 10**decimals) * pong_per_usd1
