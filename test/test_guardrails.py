"""
Tests for guardrail validation.
"""

from unittest.mock import MagicMock

import pytest

from conftest import BASE, ETHEREUM, TEST_USER, make_decision, set_guardrails
from app.rebalancer.cost_model import StepCostModel
from app.rebalancer.exceptions import ReadUnavailableError
from app.rebalancer.guardrails import GuardrailValidator, read_guardrails
from app.rebalancer.models import UserGuardrails, Verdict


def _guardrails(min_diff=50, gas_ceiling=5_000_000, enabled=True):
    return UserGuardrails(TEST_USER, 100, gas_ceiling, min_diff, enabled, last_updated=1)


@pytest.fixture()
def validator(registry, clients, cost_model):
    return GuardrailValidator(registry, clients, cost_model)


def test_scenario_a_gain_above_user_minimum_is_ok(validator):
    decision = make_decision(gain=100)
    assert validator.validate(decision, _guardrails(min_diff=50)) == Verdict.OK
    assert decision.approved
    assert decision.reason == "All validations passed"


def test_scenario_b_gain_below_user_minimum(validator):
    decision = make_decision(gain=100)
    assert validator.validate(decision, _guardrails(min_diff=150)) == Verdict.GAIN_BELOW_USER_MINIMUM
    assert decision.verdict == Verdict.GAIN_BELOW_USER_MINIMUM
    assert "below user minimum" in decision.reason


def test_scenario_c_gas_above_user_ceiling(validator):
    decision = make_decision(dest_chain=BASE, gain=200, cost=5_000_000)
    assert validator.validate(decision, _guardrails(gas_ceiling=3_000_000)) == Verdict.GAS_ABOVE_USER_CEILING


def test_gain_check_runs_before_gas_check(validator):
    decision = make_decision(gain=10, cost=5_000_000)
    assert validator.validate(decision, _guardrails(min_diff=50, gas_ceiling=1)) == Verdict.GAIN_BELOW_USER_MINIMUM


def test_automation_disabled_runs_first(validator):
    decision = make_decision(gain=10, cost=5_000_000)
    verdict = validator.validate(decision, _guardrails(min_diff=50, gas_ceiling=1, enabled=False))
    assert verdict == Verdict.AUTOMATION_DISABLED
    assert decision.reason == "User has auto-rebalance disabled"


def test_static_rejections_do_not_read_cooldown(registry, cost_model):
    client = MagicMock()
    validator = GuardrailValidator(registry, {ETHEREUM: client}, cost_model)

    validator.validate(make_decision(gain=10), _guardrails(min_diff=50))

    client.can_rebalance.assert_not_called()


def test_cooldown_active(validator, clients):
    clients[ETHEREUM].cooldowns[TEST_USER.lower()] = (False, 1800)
    decision = make_decision(gain=100)

    assert validator.validate(decision, _guardrails()) == Verdict.COOLDOWN_ACTIVE
    assert decision.reason == "Cooldown active - 1800s remaining"


def test_cooldown_is_observed(registry, clients, cost_model):
    observer = MagicMock()
    clients[ETHEREUM].cooldowns[TEST_USER.lower()] = (False, 60)
    validator = GuardrailValidator(registry, clients, cost_model, cooldown_observer=observer)

    validator.validate(make_decision(gain=100), _guardrails())

    observer.assert_called_once_with(TEST_USER, ETHEREUM, False, 60)


def test_cooldown_read_failure_propagates(validator, clients):
    clients[ETHEREUM].cooldowns[TEST_USER.lower()] = ReadUnavailableError("canRebalance failed")
    with pytest.raises(ReadUnavailableError):
        validator.validate(make_decision(gain=100), _guardrails())


def test_not_profitable_for_actual_amount(validator):
    # 100 USDC at +1% for 30 days earns $0.08, far below $1 gas plus $1 minimum profit
    decision = make_decision(amount=100 * 10**6, gain=100)
    assert validator.validate(decision, _guardrails()) == Verdict.NOT_PROFITABLE
    assert decision.reason.startswith("Not profitable after gas costs")


def test_amount_dependent_costs_are_included(registry, clients):
    # slippage allowance of 1% on 10,000 USDC wipes out the 30 day gain
    validator = GuardrailValidator(registry, clients, StepCostModel(slippage_bps=100))
    assert validator.validate(make_decision(gain=100), _guardrails()) == Verdict.NOT_PROFITABLE


def test_read_guardrails_defaults_when_never_set(clients):
    guardrails = read_guardrails(clients[ETHEREUM], TEST_USER)
    assert guardrails == UserGuardrails.defaults(TEST_USER)
    assert not guardrails.automation_enabled


def test_read_guardrails_from_chain(clients):
    set_guardrails(clients[ETHEREUM], min_diff=75, gas_ceiling=2_000_000)
    guardrails = read_guardrails(clients[ETHEREUM], TEST_USER)
    assert guardrails.min_yield_gain_bps == 75
    assert guardrails.gas_ceiling_usd == 2_000_000
    assert guardrails.automation_enabled
