"""
Compute runs: point-in-time grade computation for one section/term.

A run freezes its configuration references when it is created (scheme
version, weight profile and weight generation, transmutation table and row
generation). Executing it is one-shot: created moves to completed or failed,
and either state is terminal.

Everything up to the per-student results only reads. The computed grades and
the run's completed status are written in a single commit, so a failed run
never leaves a partial set of grades behind.
"""

import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timezone
from functools import partial
from typing import Dict, List, Optional, Tuple

from flask import current_app

from extensions import db
from gradebook.aggregation import (
    ComponentTotals, WeightPlan, aggregate_student, index_scores, reconcile_weights, weighted_score,
)
from gradebook.audit import record_audit, snapshot
from gradebook.breakdown import Breakdown, ComponentBreakdown
from gradebook.classification import SOURCE_EXPLICIT, ProfileResolution, resolve_weight_profile
from gradebook.errors import (
    ComputationError, ConfigurationError, GradebookError, NotFoundError, RunStateError, ValidationError,
)
from gradebook.schemes import get_scheme, get_weight_profile, load_weight_version
from gradebook.scores import get_offering, get_section, load_snapshot, valid_at
from gradebook.transmutation import (
    active_rows_version, get_transmutation_table, load_row_version, lookup_transmuted_grade,
)
from gradebook.versioning import active_version, weights_scope
from models import (
    RUN_STATUSES, ComputedGrade, ComputeRun, GradingComponent, GradingScheme, SectionStudent,
    Student, TransmutationTable, utcnow,
)

logger = logging.getLogger(__name__)

SCHEME_LABELS = {'k12': 'K-12', 'higher-ed': 'Higher education'}

# Plain snapshots handed to the per-student computation (safe to share across threads)
ComponentView = namedtuple('ComponentView', 'id code label')
ItemView = namedtuple('ItemView', 'id component_id max_points')
ScoreView = namedtuple('ScoreView', 'graded_item_id student_id points_earned status')
RowView = namedtuple('RowView', 'initial_grade transmuted_grade')


@dataclass
class ComputeOutcome:
    """Result of executing a run. error is set (and no grades exist) when it failed."""
    run: ComputeRun
    grades: List[ComputedGrade] = field(default_factory=list)
    error: Optional[GradebookError] = None

    @property
    def succeeded(self):
        return self.error is None


@dataclass(frozen=True)
class RunPlan:
    """Everything a run needs, loaded once before any student is computed"""
    components: Tuple[ComponentView, ...]
    weights: WeightPlan
    requires_transmutation: bool
    transmutation_rows: Tuple[RowView, ...]
    items: Tuple[ItemView, ...]
    scores_by_student: Dict[int, Dict[int, ScoreView]]
    student_ids: Tuple[int, ...]
    context: Dict[str, object]


@dataclass(frozen=True)
class StudentGrade:
    student_id: int
    initial_grade: float
    transmuted_grade: Optional[float]
    final_numeric_grade: float
    breakdown: Breakdown


def _naive_utc(value):
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ============================================================================
# Run creation
# ============================================================================

def _default_transmutation_table(ctx, scheme):
    """Latest published table of the scheme"""
    return TransmutationTable.query.filter(
        TransmutationTable.organization_id == ctx.organization_id,
        TransmutationTable.scheme_id == scheme.id,
        TransmutationTable.archived_at.is_(None),
        TransmutationTable.published_at.isnot(None),
    ).order_by(TransmutationTable.version.desc()).first()


def create_compute_run(ctx, school_year_id, term_period, scheme_id, section_id=None, offering_id=None,
                       weight_profile_id=None, transmutation_table_id=None, as_of=None):
    """
    Create a run and freeze the configuration it will compute with.

    Args:
        section_id / offering_id: one is required; an offering implies its section
        weight_profile_id: skip classification and use this profile
        transmutation_table_id: defaults to the latest published table
            (k12 and higher-ed only)
        as_of: score snapshot boundary, defaults to now

    Raises:
        NotFoundError: section, offering, scheme, profile or table missing
        ValidationError: incomplete request
        ConfigurationError: unpublished scheme, unresolvable profile or no
            transmutation table where one is required
    """
    offering = None
    if offering_id is not None:
        offering = get_offering(ctx, offering_id)
        if section_id is not None and section_id != offering.section_id:
            raise ValidationError(f"Offering {offering_id} does not belong to section {section_id}")
        section_id = offering.section_id
    if section_id is None:
        raise ValidationError("section_id or offering_id is required")
    if school_year_id is None:
        raise ValidationError("school_year_id is required")
    if not term_period:
        raise ValidationError("term_period is required")

    section = get_section(ctx, section_id)
    scheme = get_scheme(ctx, scheme_id)
    if not scheme.is_published:
        raise ConfigurationError(f"Scheme {scheme.id} is not published")

    if weight_profile_id is not None:
        profile = get_weight_profile(ctx, weight_profile_id)
        if profile.scheme_id != scheme.id:
            raise ValidationError(f"Weight profile {profile.id} does not belong to scheme {scheme.id}")
        resolution = ProfileResolution(
            profile_id=profile.id,
            classification_used=profile.profile_key,
            classification_source=SOURCE_EXPLICIT,
            is_fallback=False,
        )
    else:
        resolution = resolve_weight_profile(ctx, section.id, scheme.id)

    weight_version = active_version(ctx, weights_scope(scheme.id, resolution.profile_id))

    table = None
    row_version = None
    if scheme.requires_transmutation:
        if transmutation_table_id is not None:
            table = get_transmutation_table(ctx, transmutation_table_id)
            if table.scheme_id != scheme.id:
                raise ValidationError(f"Transmutation table {table.id} does not belong to scheme {scheme.id}")
        else:
            table = _default_transmutation_table(ctx, scheme)
        if table is None:
            raise ConfigurationError(
                f"{SCHEME_LABELS[scheme.scheme_type]} scheme requires transmutation_table_id"
            )
        row_version = active_rows_version(ctx, table.id)

    run = ComputeRun(
        organization_id=ctx.organization_id,
        school_id=section.school_id or ctx.school_id,
        section_id=section.id,
        section_subject_offering_id=offering.id if offering else None,
        school_year_id=school_year_id,
        term_period=term_period,
        scheme_id=scheme.id,
        scheme_version=scheme.version,
        weight_profile_id=resolution.profile_id,
        weight_config_version_id=weight_version.id if weight_version else None,
        transmutation_table_id=table.id if table else None,
        transmutation_version=table.version if table else None,
        transmutation_config_version_id=row_version.id if row_version else None,
        classification_used=resolution.classification_used,
        classification_source=resolution.classification_source,
        classification_is_fallback=resolution.is_fallback,
        as_of=_naive_utc(as_of) or utcnow(),
        run_by=ctx.actor_id,
        status='created',
        created_by=ctx.actor_id,
    )
    db.session.add(run)
    db.session.flush()
    record_audit(ctx, 'create', 'gradebook_compute_run', run.id, after=snapshot(run))
    db.session.commit()

    logger.info(
        "Compute run %s created: section %s %s, scheme %s v%s, profile %s (%s)",
        run.id, run.section_id, run.term_period, scheme.id, scheme.version,
        resolution.profile_id, resolution.classification_source,
    )
    return run


# ============================================================================
# Queries
# ============================================================================

def get_compute_run(ctx, run_id):
    run = ComputeRun.query.filter_by(id=run_id, organization_id=ctx.organization_id).first()
    if run is None:
        raise NotFoundError(f"Compute run {run_id} not found")
    return run


def list_compute_runs(ctx, section_id=None, term_period=None, status=None, scheme_id=None):
    """Runs newest first"""
    query = ComputeRun.query.filter_by(organization_id=ctx.organization_id)
    if section_id is not None:
        query = query.filter_by(section_id=section_id)
    if term_period:
        query = query.filter_by(term_period=term_period)
    if status:
        if status not in RUN_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(RUN_STATUSES)}; got {status!r}")
        query = query.filter_by(status=status)
    if scheme_id is not None:
        query = query.filter_by(scheme_id=scheme_id)
    return query.order_by(ComputeRun.created_at.desc(), ComputeRun.id.desc()).all()


def list_computed_grades(ctx, run_id):
    """Grades of a run ordered by student last name"""
    run = get_compute_run(ctx, run_id)
    return ComputedGrade.query.join(Student, ComputedGrade.student_id == Student.id).filter(
        ComputedGrade.compute_run_id == run.id
    ).order_by(Student.last_name.asc(), Student.first_name.asc(), ComputedGrade.student_id.asc()).all()


# ============================================================================
# Execution
# ============================================================================

def _load_scheme(ctx, run):
    scheme = GradingScheme.query.filter_by(id=run.scheme_id, organization_id=ctx.organization_id).first()
    if scheme is None:
        raise ConfigurationError(f"Scheme {run.scheme_id} not found")
    return scheme


def _load_components(ctx, run):
    """Components of the scheme as they existed at the run's as_of"""
    components = GradingComponent.query.filter(
        GradingComponent.organization_id == ctx.organization_id,
        GradingComponent.scheme_id == run.scheme_id,
        valid_at(GradingComponent, run.as_of),
    ).order_by(GradingComponent.display_order.asc(), GradingComponent.id.asc()).all()
    return tuple(ComponentView(c.id, c.code, c.label) for c in components)


def _load_roster(run):
    memberships = SectionStudent.query.filter_by(
        section_id=run.section_id, status='active', end_date=None
    ).order_by(SectionStudent.student_id.asc()).all()
    return tuple(m.student_id for m in memberships)


def _offering_context(ctx, run):
    context = {
        'section_subject_offering_id': run.section_subject_offering_id,
        'subject_id': None,
        'subject_code': None,
        'subject_name': None,
    }
    if run.section_subject_offering_id is None:
        return context
    try:
        offering = get_offering(ctx, run.section_subject_offering_id)
    except NotFoundError:
        logger.warning("Compute run %s: offering %s no longer exists", run.id, run.section_subject_offering_id)
        return context
    if offering.subject is not None:
        context.update(
            subject_id=offering.subject.id,
            subject_code=offering.subject.code,
            subject_name=offering.subject.name,
        )
    return context


def build_run_plan(ctx, run):
    """
    Load and validate everything the run computes with. Reads only.

    Raises:
        ConfigurationError: missing scheme, weights out of policy or a
            required transmutation table with no rows
    """
    scheme = _load_scheme(ctx, run)
    rounding_mode = scheme.effective_rounding_mode
    weight_policy = scheme.effective_weight_policy

    components = _load_components(ctx, run)
    weights = reconcile_weights(
        components,
        load_weight_version(ctx, run.weight_config_version_id),
        weight_policy,
        current_app.config.get('GRADEBOOK_WEIGHT_TOLERANCE', 0.01),
    )

    rows = ()
    if scheme.requires_transmutation:
        if run.transmutation_table_id is None:
            raise ConfigurationError(
                f"{SCHEME_LABELS[scheme.scheme_type]} scheme requires transmutation_table_id"
            )
        rows = tuple(RowView(r.initial_grade, r.transmuted_grade)
                     for r in load_row_version(ctx, run.transmutation_config_version_id))
        if not rows:
            raise ConfigurationError("Transmutation table has no rows")

    items, scores = load_snapshot(ctx, run)
    score_views = [ScoreView(s.graded_item_id, s.student_id, s.points_earned, s.status) for s in scores]

    context = {
        'rounding_mode': rounding_mode,
        'weight_policy': weight_policy,
        'total_weight': weights.total_weight,
        'computation_method': scheme.scheme_type,
        'scheme_id': run.scheme_id,
        'scheme_version': run.scheme_version,
        'transmutation_table_id': run.transmutation_table_id,
        'transmutation_version': run.transmutation_version,
        'as_of': run.as_of.isoformat(),
        'weight_profile_id': run.weight_profile_id,
        'classification_used': run.classification_used,
        'classification_source': run.classification_source,
        'classification_is_fallback': bool(run.classification_is_fallback),
        'section_id': run.section_id,
        'school_year_id': run.school_year_id,
        'term_period': run.term_period,
    }
    context.update(_offering_context(ctx, run))

    return RunPlan(
        components=components,
        weights=weights,
        requires_transmutation=scheme.requires_transmutation,
        transmutation_rows=rows,
        items=tuple(ItemView(i.id, i.component_id, i.max_points) for i in items),
        scores_by_student=dict(index_scores(score_views)),
        student_ids=_load_roster(run),
        context=context,
    )


def compute_student_grade(plan, student_id):
    """Grade and breakdown for one student. Pure: no database access."""
    totals = aggregate_student(plan.items, plan.scores_by_student.get(student_id, {}))

    entries = []
    total_weighted = 0.0
    for component in plan.components:
        component_totals = totals.get(component.id) or ComponentTotals()
        weight = plan.weights.weight_for(component.id)
        percent = component_totals.percent
        weighted = weighted_score(percent, weight)
        total_weighted += weighted
        entries.append(ComponentBreakdown(
            component_id=component.id,
            component_code=component.code,
            component_label=component.label,
            raw_total=component_totals.raw_total,
            max_total=component_totals.max_total,
            percent=percent,
            weight_percent=weight,
            weighted_score=weighted,
            status_counts=dict(component_totals.status_counts),
            excluded_max_points=component_totals.excluded_max_points,
        ))

    initial_grade = plan.weights.initial_grade(total_weighted)
    initial_grade_key = None
    transmuted_grade = None
    final_numeric_grade = initial_grade
    if plan.requires_transmutation:
        row = lookup_transmuted_grade(plan.transmutation_rows, initial_grade)
        initial_grade_key = row.initial_grade
        transmuted_grade = row.transmuted_grade
        final_numeric_grade = row.transmuted_grade

    breakdown = Breakdown(
        components=entries,
        initial_grade=initial_grade,
        initial_grade_key=initial_grade_key,
        transmuted_grade=transmuted_grade,
        final_numeric_grade=final_numeric_grade,
        **plan.context,
    )
    return StudentGrade(student_id, initial_grade, transmuted_grade, final_numeric_grade, breakdown)


def compute_all(plan, workers=1):
    """
    Per-student results in roster order. The first failing student aborts
    the whole computation.
    """
    compute = partial(compute_student_grade, plan)
    if workers > 1 and len(plan.student_ids) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(compute, plan.student_ids))
    return [compute(student_id) for student_id in plan.student_ids]


def _claim_run(ctx, run, status, error_message=None):
    """
    Move a run out of 'created' with a conditional update. Only one executor
    can win the transition; the loser gets RunStateError.
    """
    claimed = ComputeRun.query.filter_by(id=run.id, status='created').update(
        {
            'status': status,
            'error_message': error_message,
            'completed_at': utcnow(),
            'updated_by': ctx.actor_id,
        },
        synchronize_session=False,
    )
    if claimed != 1:
        db.session.rollback()
        db.session.refresh(run)
        raise RunStateError(f"Compute run {run.id} already processed (status: {run.status})")
    db.session.refresh(run)


def _persist_results(ctx, run, results):
    before = snapshot(run)
    _claim_run(ctx, run, 'completed')

    grades = []
    for result in results:
        grade = ComputedGrade(
            organization_id=run.organization_id,
            compute_run_id=run.id,
            student_id=result.student_id,
            section_id=run.section_id,
            section_subject_offering_id=run.section_subject_offering_id,
            school_year_id=run.school_year_id,
            term_period=run.term_period,
            initial_grade=result.initial_grade,
            final_numeric_grade=result.final_numeric_grade,
            transmuted_grade=result.transmuted_grade,
        )
        grade.set_breakdown(result.breakdown)
        grades.append(grade)
    db.session.add_all(grades)
    db.session.flush()

    record_audit(ctx, 'create', 'gradebook_computed_grade', run.id,
                 after={'count': len(grades), 'computed_grade_ids': [g.id for g in grades]},
                 event_data={'compute_run_id': run.id, 'bulk': True})
    record_audit(ctx, 'update', 'gradebook_compute_run', run.id, before=before, after=snapshot(run))
    db.session.commit()
    return grades


def _fail_run(ctx, run_id, error):
    db.session.rollback()
    run = db.session.get(ComputeRun, run_id)
    before = snapshot(run)
    _claim_run(ctx, run, 'failed', str(error))
    record_audit(ctx, 'update', 'gradebook_compute_run', run.id, before=before, after=snapshot(run))
    db.session.commit()
    logger.error("Compute run %s failed: %s", run.id, error)
    return ComputeOutcome(run=run, grades=[], error=error)


def execute_compute_run(ctx, run_id):
    """
    Compute and store the grades of a created run.

    Configuration problems and unexpected errors do not raise: the run is
    marked failed with the message and the error is returned on the outcome.

    Raises:
        NotFoundError: unknown run
        RunStateError: the run was already executed
    """
    run = get_compute_run(ctx, run_id)
    if run.status != 'created':
        raise RunStateError(f"Compute run {run.id} already processed (status: {run.status})")
    run_id = run.id
    workers = int(current_app.config.get('GRADEBOOK_COMPUTE_WORKERS', 1) or 1)

    try:
        plan = build_run_plan(ctx, run)
        results = compute_all(plan, workers)
        grades = _persist_results(ctx, run, results)
    except RunStateError:
        # another executor finished the run first; its result stands
        raise
    except ConfigurationError as exc:
        return _fail_run(ctx, run_id, exc)
    except Exception as exc:
        logger.exception("Compute run %s raised an unexpected error", run_id)
        return _fail_run(ctx, run_id, ComputationError(f"Unexpected error while computing grades: {exc}"))

    logger.info("Compute run %s completed: %s grades", run.id, len(grades))
    return ComputeOutcome(run=run, grades=grades)


def run_computation(ctx, school_year_id, term_period, scheme_id, **options):
    """Create a run and execute it immediately"""
    run = create_compute_run(ctx, school_year_id, term_period, scheme_id, **options)
    return execute_compute_run(ctx, run.id)
