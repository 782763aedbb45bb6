"""
Completion factor calculator.

Multiplicative quality discount applied to project-based KPI:

    factor = base × (1 − 0.05 × revisions) × (0.9 if delayed) × (0.8 if complaint)

floored at 0.  Sales commission uses the same discount without the
complaint penalty; the sales bonus is never discounted.
"""

REVISION_PENALTY = 0.05
DELAY_FACTOR = 0.9
COMPLAINT_FACTOR = 0.8


def completion_factor(
    *,
    base: float = 1.0,
    revision_count: int = 0,
    delayed: bool = False,
    complaint: bool = False,
) -> float:
    factor = base * (1 - REVISION_PENALTY * (revision_count or 0))
    if delayed:
        factor *= DELAY_FACTOR
    if complaint:
        factor *= COMPLAINT_FACTOR
    return round(max(0.0, factor), 4)


def sales_completion_factor(*, base: float = 1.0, revision_count: int = 0, delayed: bool = False) -> float:
    """Factor for the sales commission: complaint-exempt."""
    return completion_factor(base=base, revision_count=revision_count, delayed=delayed, complaint=False)


def project_factors(project, base: float) -> tuple[float, float]:
    """Return ``(factor, sales_factor)`` for *project* with snapshot *base*."""
    factor = completion_factor(
        base=base,
        revision_count=project.revision_count,
        delayed=project.is_delayed,
        complaint=project.has_complaint,
    )
    sales = sales_completion_factor(
        base=base,
        revision_count=project.revision_count,
        delayed=project.is_delayed,
    )
    return factor, sales
