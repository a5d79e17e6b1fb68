import random
from decimal import Decimal

from companion.services.policy import EconomyPolicy, FixedPolicy


def test_amounts_stay_in_band():
    policy = EconomyPolicy(random.Random(42))
    for _ in range(500):
        reward = policy.reward_amount()
        penalty = policy.penalty_amount()
        assert Decimal("1") <= reward < Decimal("11")
        assert Decimal("1") <= penalty < Decimal("6")
        assert reward == reward.quantize(Decimal("0.01"))


def test_essential_roughly_thirty_percent():
    policy = EconomyPolicy(random.Random(3))
    hits = sum(policy.is_essential() for _ in range(4000))
    assert 0.25 < hits / 4000 < 0.35


def test_rest_choice_is_a_coin_flip():
    policy = EconomyPolicy(random.Random(11))
    longs = sum(policy.rest_minutes(5, 30) == 30 for _ in range(2000))
    assert 0.45 < longs / 2000 < 0.55


def test_seeded_policies_agree():
    a = EconomyPolicy(random.Random(99))
    b = EconomyPolicy(random.Random(99))
    assert [a.reward_amount() for _ in range(5)] == [b.reward_amount() for _ in range(5)]


def test_fixed_policy():
    policy = FixedPolicy(essential=True, reward=7, penalty="2.5", long_rest=True)
    assert policy.is_essential()
    assert policy.reward_amount() == Decimal("7")
    assert policy.penalty_amount() == Decimal("2.5")
    assert policy.rest_minutes(5, 30) == 30
