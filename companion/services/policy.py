import random
from decimal import Decimal, ROUND_HALF_UP

ESSENTIAL_PROBABILITY = 0.3
REWARD_BAND = (1, 11)   # [low, high)
PENALTY_BAND = (1, 6)

_CENTS = Decimal("0.01")


def _money(value: float) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


class EconomyPolicy:
    """
    Every random decision of the points economy goes through here.

    Pass a seeded ``random.Random`` (or subclass and override a method) to make
    generation and rest scheduling deterministic.
    """

    def __init__(self, rng: random.Random = None):
        self.rng = rng or random.Random()

    def is_essential(self) -> bool:
        return self.rng.random() < ESSENTIAL_PROBABILITY

    def reward_amount(self) -> Decimal:
        low, high = REWARD_BAND
        return min(_money(self.rng.uniform(low, high)), Decimal(high) - _CENTS)

    def penalty_amount(self) -> Decimal:
        low, high = PENALTY_BAND
        return min(_money(self.rng.uniform(low, high)), Decimal(high) - _CENTS)

    def rest_minutes(self, short: int, long: int) -> int:
        # Plain coin flip, no adaptation to history.
        return long if self.rng.random() < 0.5 else short


class FixedPolicy(EconomyPolicy):
    """Policy with pinned outcomes, for tests and demos."""

    def __init__(self, essential=False, reward=Decimal("5"), penalty=Decimal("3"), long_rest=False):
        super().__init__(random.Random(0))
        self.essential = essential
        self.reward = Decimal(reward)
        self.penalty = Decimal(penalty)
        self.long_rest = long_rest

    def is_essential(self) -> bool:
        return self.essential

    def reward_amount(self) -> Decimal:
        return self.reward

    def penalty_amount(self) -> Decimal:
        return self.penalty

    def rest_minutes(self, short: int, long: int) -> int:
        return long if self.long_rest else short
