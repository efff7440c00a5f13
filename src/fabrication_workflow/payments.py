"""
Payment schedule calculation.

Amounts are whole currency units. Each stage is rounded half-up from its
percentage share and the final stage absorbs whatever residual rounding
leaves, so the stage amounts always sum to the approved total.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from .errors import ValidationError
from .models import PaymentPlan, PaymentStage, PaymentStageLabel

# Stage layouts per plan, in billing order.
STAGED_SPLIT: tuple[tuple[PaymentStageLabel, int], ...] = (
    (PaymentStageLabel.DOWNPAYMENT, 30),
    (PaymentStageLabel.PROGRESS, 40),
    (PaymentStageLabel.COMPLETION, 30),
)
FULL_SPLIT: tuple[tuple[PaymentStageLabel, int], ...] = ((PaymentStageLabel.FULL, 100),)

PLAN_LAYOUTS: dict[PaymentPlan, tuple[tuple[PaymentStageLabel, int], ...]] = {
    PaymentPlan.STAGED: STAGED_SPLIT,
    PaymentPlan.FULL: FULL_SPLIT,
}

# Stage whose verification gates the start of fabrication.
GATING_STAGE: dict[PaymentPlan, PaymentStageLabel] = {
    PaymentPlan.STAGED: PaymentStageLabel.DOWNPAYMENT,
    PaymentPlan.FULL: PaymentStageLabel.FULL,
}

_HUNDRED = Decimal(100)


def parse_plan(plan: PaymentPlan | str) -> PaymentPlan:
    """Coerce *plan* into a PaymentPlan, rejecting unknown values."""
    if isinstance(plan, PaymentPlan):
        return plan
    try:
        return PaymentPlan(str(plan).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(p.value for p in PaymentPlan)
        raise ValidationError(f"Unknown payment plan {plan!r}. Supported plans: {allowed}") from exc


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_stages(total_amount: int, plan: PaymentPlan | str) -> list[PaymentStage]:
    """
    Derive the billing stages for an approved total.

    Args:
        total_amount: Approved costing total, a positive integer.
        plan:         ``staged`` (30/40/30) or ``full`` (single 100% stage).

    Returns:
        Fresh PaymentStage records, all ``pending``, in billing order.

    Raises:
        ValidationError: If the amount is not a positive integer or the plan
            is unknown.
    """
    if isinstance(total_amount, bool) or not isinstance(total_amount, int):
        raise ValidationError(f"total_amount must be an integer, got {type(total_amount).__name__}")
    if total_amount <= 0:
        raise ValidationError(f"total_amount must be positive, got {total_amount}")

    layout = PLAN_LAYOUTS[parse_plan(plan)]
    total = Decimal(total_amount)

    stages: list[PaymentStage] = []
    allocated = 0
    for index, (label, percentage) in enumerate(layout):
        if index == len(layout) - 1:
            amount = total_amount - allocated
        else:
            amount = round_half_up(total * percentage / _HUNDRED)
            allocated += amount
        stages.append(PaymentStage(label=label, percentage=percentage, amount=amount))
    return stages


def gating_stage(plan: PaymentPlan, stages: list[PaymentStage]) -> PaymentStage | None:
    """Return the stage that must be verified before fabrication starts."""
    label = GATING_STAGE[plan]
    return next((stage for stage in stages if stage.label == label), None)
