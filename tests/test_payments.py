from decimal import Decimal

import pytest

from fabrication_workflow.errors import ValidationError
from fabrication_workflow.models import PaymentPlan, PaymentStageLabel, PaymentStageStatus
from fabrication_workflow.payments import compute_stages, gating_stage, parse_plan, round_half_up


def test_staged_plan_splits_30_40_30() -> None:
    stages = compute_stages(10000, PaymentPlan.STAGED)
    assert [(stage.label, stage.percentage, stage.amount) for stage in stages] == [
        (PaymentStageLabel.DOWNPAYMENT, 30, 3000),
        (PaymentStageLabel.PROGRESS, 40, 4000),
        (PaymentStageLabel.COMPLETION, 30, 3000),
    ]
    assert all(stage.status == PaymentStageStatus.PENDING for stage in stages)


def test_last_stage_absorbs_rounding_residual() -> None:
    stages = compute_stages(10001, "staged")
    assert [stage.amount for stage in stages] == [3000, 4000, 3001]
    assert sum(stage.amount for stage in stages) == 10001


@pytest.mark.parametrize("total", [1, 2, 7, 99, 333, 52000, 1234567])
def test_staged_amounts_always_sum_to_total(total: int) -> None:
    assert sum(stage.amount for stage in compute_stages(total, PaymentPlan.STAGED)) == total


def test_small_total_rounds_half_up() -> None:
    # 30% of 5 is 1.5 and 40% is 2.0
    assert [stage.amount for stage in compute_stages(5, PaymentPlan.STAGED)] == [2, 2, 1]


def test_full_plan_is_single_stage() -> None:
    stages = compute_stages(52000, "FULL")
    assert len(stages) == 1
    assert stages[0].label == PaymentStageLabel.FULL
    assert stages[0].percentage == 100
    assert stages[0].amount == 52000


@pytest.mark.parametrize("total", [0, -100])
def test_non_positive_total_is_rejected(total: int) -> None:
    with pytest.raises(ValidationError):
        compute_stages(total, PaymentPlan.STAGED)


@pytest.mark.parametrize("total", [True, 100.0, "100"])
def test_non_integer_total_is_rejected(total: object) -> None:
    with pytest.raises(ValidationError):
        compute_stages(total, PaymentPlan.STAGED)  # type: ignore[arg-type]


def test_unknown_plan_is_rejected() -> None:
    with pytest.raises(ValidationError, match="Unknown payment plan"):
        compute_stages(1000, "quarterly")
    with pytest.raises(ValueError):
        parse_plan("")


def test_round_half_up() -> None:
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("3.5")) == 4
    assert round_half_up(Decimal("2.49")) == 2


def test_gating_stage_per_plan() -> None:
    staged = compute_stages(1000, PaymentPlan.STAGED)
    full = compute_stages(1000, PaymentPlan.FULL)
    assert gating_stage(PaymentPlan.STAGED, staged).label == PaymentStageLabel.DOWNPAYMENT
    assert gating_stage(PaymentPlan.FULL, full).label == PaymentStageLabel.FULL
    assert gating_stage(PaymentPlan.FULL, staged) is None
