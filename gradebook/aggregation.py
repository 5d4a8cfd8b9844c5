"""
Score aggregation and weight reconciliation.

Pure functions over already-loaded items, scores and weights; nothing here
touches the database.

Score status policy:
- present: counts points_earned and max_points
- missing / absent: counts max_points, points = 0
- excused: excluded from numerator and denominator
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict

from gradebook.errors import ConfigurationError
from models import SCORE_STATUSES

# decimal places kept on an initial grade
GRADE_PRECISION = 6

# status -> (counts points, counts max_points)
STATUS_POLICY = {
    'present': (True, True),
    'missing': (False, True),
    'absent': (False, True),
    'excused': (False, False),
}


def _empty_counts():
    return dict.fromkeys(SCORE_STATUSES, 0)


@dataclass
class ComponentTotals:
    raw_total: float = 0.0
    max_total: float = 0.0
    status_counts: Dict[str, int] = field(default_factory=_empty_counts)
    excluded_max_points: float = 0.0

    @property
    def percent(self):
        return component_percent(self.raw_total, self.max_total)


def component_percent(raw_total, max_total):
    return raw_total * 100 / max_total if max_total > 0 else 0.0


def weighted_score(percent, weight_percent):
    return percent * weight_percent / 100


def index_scores(scores):
    """{student_id: {graded_item_id: score}}"""
    indexed = defaultdict(dict)
    for score in scores:
        indexed[score.student_id][score.graded_item_id] = score
    return indexed


def aggregate_student(items, student_scores):
    """
    Per-component totals for one student.

    Args:
        items: graded items (id, component_id, max_points)
        student_scores: {graded_item_id: score} for this student

    Returns:
        dict: component_id -> ComponentTotals (every component with an item)
    """
    totals = {}
    for item in items:
        component = totals.setdefault(item.component_id, ComponentTotals())
        score = student_scores.get(item.id)
        if score is None:
            continue

        try:
            counts_points, counts_max = STATUS_POLICY[score.status]
        except KeyError:
            raise ConfigurationError(f"Unknown score status {score.status!r} on graded item {item.id}")

        component.status_counts[score.status] += 1
        if counts_max:
            component.max_total += item.max_points
            if counts_points:
                component.raw_total += score.points_earned or 0
        else:
            component.excluded_max_points += item.max_points
    return totals


@dataclass
class WeightPlan:
    """Weights in effect for a run, validated once before any student is computed"""
    weights: Dict[int, float]
    total_weight: float
    policy: str

    def weight_for(self, component_id):
        return self.weights.get(component_id, 0.0)

    def initial_grade(self, total_weighted_score):
        """
        Weighted score rescaled to a 100-point basis by the weight actually
        used. Under strict the weights total 100 already, so this only
        absorbs float drift, e.g. 40.3 + 43.9 + 15.8 summing to 99.99...

        Rounded to GRADE_PRECISION places so a floor lookup on a table
        threshold is not missed by a trailing 9.
        """
        if self.total_weight <= 0:
            return 0.0
        return round(total_weighted_score / self.total_weight * 100, GRADE_PRECISION)


def reconcile_weights(components, weight_rows, policy, tolerance=0.01):
    """
    Build the weight plan for a run.

    Weights pointing at components that are not active are ignored. Under the
    strict policy the assigned weights must total 100 +/- tolerance and every
    active component needs an assigned weight (0 is a legal assignment).

    Raises:
        ConfigurationError: strict policy violated
    """
    active_ids = {c.id for c in components}
    weights = {}
    for row in weight_rows:
        if row.component_id in active_ids:
            weights[row.component_id] = float(row.weight_percent)
    total = sum(weights.values())

    if policy == 'strict':
        if abs(total - 100) > tolerance:
            raise ConfigurationError(
                f"Component weights sum to {total:g}% but must equal 100% (strict mode)"
            )
        unassigned = [c.code for c in components if c.id not in weights]
        if unassigned:
            raise ConfigurationError(
                f"Components without an assigned weight (strict mode): {', '.join(unassigned)}"
            )
    elif policy != 'normalize':
        raise ConfigurationError(f"Unknown weight policy {policy!r}")

    return WeightPlan(weights=weights, total_weight=total, policy=policy)
