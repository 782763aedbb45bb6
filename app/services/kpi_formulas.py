"""
Role formula engine.

Pure functions mapping (role, inputs) → ``FormulaResult(value, formula,
details)``.  ``value`` is rounded to 2 decimals; ``formula`` is the
human-audit text shown next to the number.

Dispatch is the ``_FORMULAS`` table keyed by role code.  Roles without an
entry use the generic ``amount × ratio × (workload) × factor`` formula, so
a newly configured role never fails to price.

Usage:
    from app.services.kpi_formulas import FormulaInputs, calculate

    result = calculate(FormulaInputs(role="pm", amount=10000, ratio=0.03, factor=0.9))
    result.value    # 270.0
    result.formula  # "Project amount(10000) × PM ratio(0.03) × Completion factor(0.9)"
"""

from dataclasses import dataclass, field

from app.models.project import POOLED_ROLES
from app.utils.helpers import fmt_number as _n

COMPLAINT_NOTE = "; complaint penalty -20%"


@dataclass(frozen=True)
class FormulaInputs:
    role: str
    amount: float = 0.0
    ratio: float = 0.0
    factor: float = 1.0
    translator_type: str | None = None
    workload_ratio: float = 1.0
    employment_type: str = "full_time"
    part_time_fee: float | None = None
    # sales
    commission_ratio: float = 0.0
    sales_factor: float = 1.0
    received_amount: float | None = None
    is_fully_paid: bool = False
    # part-time sales
    company_receivable: float | None = None
    tax_rate: float = 0.0
    # pooled roles
    company_total: float = 0.0
    evaluation_factor: float = 1.0
    has_complaint: bool = False


@dataclass(frozen=True)
class FormulaResult:
    value: float
    formula: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"value": self.value, "formula": self.formula, "details": dict(self.details)}


def is_fee_based(role: str, employment_type: str | None) -> bool:
    """Part-time production work is paid the entered fee, not a ratio."""
    if role == "part_time_translator":
        return True
    return employment_type == "part_time" and role not in POOLED_ROLES and role != "part_time_sales"


# ── Per-role formulas ────────────────────────────────────────────────────────

def _translator(i: FormulaInputs):
    label = "Deep-edit ratio" if i.translator_type == "deepedit" else "MTPE ratio"
    value = i.amount * i.ratio * i.workload_ratio * i.factor
    formula = (
        f"Project amount({_n(i.amount)}) × {label}({_n(i.ratio)}) × "
        f"Workload ratio({_n(i.workload_ratio)}) × Completion factor({_n(i.factor)})"
    )
    return value, formula, {"translator_type": i.translator_type or "mtpe"}


def _reviewer(i: FormulaInputs):
    value = i.amount * i.ratio * i.workload_ratio * i.factor
    formula = (
        f"Project amount({_n(i.amount)}) × Review ratio({_n(i.ratio)}) × "
        f"Occupancy share({_n(i.workload_ratio)}) × Completion factor({_n(i.factor)})"
    )
    return value, formula, {}


def _pm(i: FormulaInputs):
    value = i.amount * i.ratio * i.factor
    formula = f"Project amount({_n(i.amount)}) × PM ratio({_n(i.ratio)}) × Completion factor({_n(i.factor)})"
    return value, formula, {}


def _sales(i: FormulaInputs):
    received = i.received_amount if i.received_amount and not i.is_fully_paid else i.amount
    bonus = round(i.amount * i.ratio, 2)
    commission = round(received * i.commission_ratio * i.sales_factor, 2)
    formula = (
        f"Deal amount({_n(i.amount)}) × Sales bonus ratio({_n(i.ratio)}) + "
        f"Received amount({_n(received)}) × Commission ratio({_n(i.commission_ratio)}) × "
        f"Completion factor({_n(i.sales_factor)})"
    )
    details = {
        "bonus": bonus,
        "commission": commission,
        "received_amount": received,
        "bonus_ratio": i.ratio,
        "commission_ratio": i.commission_ratio,
        "sales_factor": i.sales_factor,
    }
    return bonus + commission, formula, details


def _part_time_sales(i: FormulaInputs):
    receivable = i.amount - (i.company_receivable or 0)
    tax = receivable * (i.tax_rate or 0)
    value = max(0.0, round(receivable - tax, 2))
    formula = (
        f"Deal amount({_n(i.amount)}) − Company receivable({_n(i.company_receivable)}) = "
        f"Receivable({_n(receivable)}); Receivable({_n(receivable)}) − Tax({tax:.2f}) = "
        f"Commission({_n(value)})"
    )
    details = {
        "company_receivable": i.company_receivable,
        "receivable": round(receivable, 2),
        "tax_rate": i.tax_rate,
        "tax": round(tax, 2),
    }
    return value, formula, details


def _fee(i: FormulaInputs):
    fee = float(i.part_time_fee or 0)
    return fee, f"Part-time fee({_n(fee)})", {"part_time_fee": fee}


def _pooled(i: FormulaInputs):
    label = "Finance ratio" if i.role == "finance" else "Admin staff ratio"
    value = i.company_total * i.ratio * i.evaluation_factor
    formula = (
        f"Company monthly amount({_n(i.company_total)}) × {label}({_n(i.ratio)}) × "
        f"Evaluation factor({_n(i.evaluation_factor)})"
    )
    return value, formula, {"company_total": i.company_total, "evaluation_factor": i.evaluation_factor}


def _generic(i: FormulaInputs):
    value = i.amount * i.ratio * i.factor
    formula = f"Project amount({_n(i.amount)}) × Ratio({_n(i.ratio)})"
    if i.workload_ratio != 1:
        value *= i.workload_ratio
        formula += f" × Workload ratio({_n(i.workload_ratio)})"
    formula += f" × Completion factor({_n(i.factor)})"
    return value, formula, {"generic": True}


_FORMULAS = {
    "translator": _translator,
    "reviewer": _reviewer,
    "pm": _pm,
    "sales": _sales,
    "part_time_sales": _part_time_sales,
    "admin_staff": _pooled,
    "finance": _pooled,
}

# Formulas whose result carries the complaint discount
_DISCOUNTED = {_translator, _reviewer, _pm, _generic}


def calculate(inputs: FormulaInputs) -> FormulaResult:
    """Price one role.  Never raises for an unknown role."""
    if is_fee_based(inputs.role, inputs.employment_type):
        handler = _fee
    else:
        handler = _FORMULAS.get(inputs.role, _generic)

    value, formula, details = handler(inputs)
    if inputs.has_complaint and handler in _DISCOUNTED:
        formula += COMPLAINT_NOTE

    details = {
        "role": inputs.role,
        "amount": inputs.amount,
        "ratio": inputs.ratio,
        "workload_ratio": inputs.workload_ratio,
        "completion_factor": inputs.factor,
        **details,
    }
    return FormulaResult(value=round(value, 2), formula=formula, details=details)


def member_inputs(project, member, snapshot, *, factor: float, sales_factor: float) -> FormulaInputs:
    """
    Build inputs for one project member.

    *member* needs ``role``, ``translator_type``, ``workload_ratio``,
    ``employment_type``, ``part_time_fee`` and ``ratio_locked``; *snapshot*
    is the project's ``CoefficientSnapshot``.
    """
    ratio = member.ratio_locked
    if ratio is None:
        ratio = snapshot.ratio_for(member.role, member.translator_type)
    tax_rate = project.part_time_sales_tax_rate
    if tax_rate is None:
        tax_rate = snapshot.part_time_sales_tax_rate
    return FormulaInputs(
        role=member.role,
        amount=float(project.amount or 0),
        ratio=float(ratio),
        factor=factor,
        translator_type=member.translator_type,
        workload_ratio=float(member.workload_ratio or 1.0),
        employment_type=member.employment_type or "full_time",
        part_time_fee=member.part_time_fee,
        commission_ratio=snapshot.sales_commission,
        sales_factor=sales_factor,
        received_amount=project.payment_received_amount,
        is_fully_paid=bool(project.payment_is_fully_paid),
        company_receivable=project.company_receivable,
        tax_rate=float(tax_rate or 0),
        has_complaint=bool(project.has_complaint),
    )


def pooled_inputs(role: str, *, company_total: float, ratio: float, evaluation_factor: float) -> FormulaInputs:
    return FormulaInputs(
        role=role,
        ratio=ratio,
        company_total=company_total,
        evaluation_factor=evaluation_factor,
    )
