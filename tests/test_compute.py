"""Tests for compute run creation and execution."""

from datetime import timedelta

import pytest

from create_test_data import DEPED_TRANSMUTATION
from gradebook import compute, schemes, scores, transmutation
from gradebook.audit import list_audit_events
from gradebook.breakdown import Breakdown
from gradebook.classification import SOURCE_DEFAULT, SOURCE_EXPLICIT
from gradebook.errors import ConfigurationError, NotFoundError, RunStateError, ValidationError
from models import ComputedGrade, ComputeRun, utcnow

TABLE = [(0, 60), (45, 75), (50, 80), (90, 95)]


@pytest.fixture
def k12(build):
    """K-12 scheme, components A/B weighted 60/40 in the default profile, one section"""
    scheme = build.scheme('k12')
    components = build.components(scheme, 'A', 'B')
    profile = build.profile(scheme, 'general', weights={'A': 60, 'B': 40}, components=components)
    table = build.table(scheme, TABLE)
    section = build.section()
    return {'scheme': scheme, 'components': components, 'profile': profile, 'table': table, 'section': section}


def _run(ctx, setup, **options):
    return compute.run_computation(ctx, 2025, 'Q1', setup['scheme'].id, section_id=setup['section'].id, **options)


def test_weighted_example_transmutes_to_floor_row(ctx, build, k12):
    student = build.student(k12['section'])
    item_a = build.item(k12['section'], k12['components']['A'], 10)
    item_b = build.item(k12['section'], k12['components']['B'], 10)
    build.score(item_a, student, 8)
    build.score(item_b, student, status='missing')

    outcome = _run(ctx, k12)

    assert outcome.succeeded
    assert outcome.run.status == 'completed'
    [grade] = outcome.grades
    assert grade.initial_grade == pytest.approx(48)
    assert grade.transmuted_grade == 75
    assert grade.final_numeric_grade == 75

    breakdown = grade.get_breakdown()
    a, b = breakdown.component('A'), breakdown.component('B')
    assert (a.percent, a.weighted_score) == (pytest.approx(80), pytest.approx(48))
    assert (b.percent, b.weighted_score, b.max_total) == (0, 0, 10)
    assert b.status_counts['missing'] == 1
    assert breakdown.initial_grade_key == 45
    assert breakdown.rounding_mode == 'floor'
    assert breakdown.weight_policy == 'strict'
    assert breakdown.computation_method == 'k12'
    assert breakdown.classification_source == SOURCE_DEFAULT
    assert breakdown.classification_is_fallback is True
    assert breakdown.as_of == outcome.run.as_of.isoformat()


def test_all_excused_component_is_not_an_error(ctx, build):
    scheme = build.scheme('percentage')
    components = build.components(scheme, 'A', 'B')
    build.profile(scheme, 'general', weights={'A': 70, 'B': 30}, components=components)
    section = build.section()
    student = build.student(section)
    build.score(build.item(section, components['A'], 10), student, 9)
    build.score(build.item(section, components['B'], 20), student, status='excused')

    outcome = compute.run_computation(ctx, 2025, 'Q1', scheme.id, section_id=section.id)

    assert outcome.succeeded
    [grade] = outcome.grades
    assert grade.initial_grade == pytest.approx(63)
    assert grade.final_numeric_grade == pytest.approx(63)
    assert grade.transmuted_grade is None
    b = grade.get_breakdown().component('B')
    assert (b.percent, b.weighted_score, b.max_total, b.excluded_max_points) == (0, 0, 0, 20)


def test_normalize_policy_rescales(ctx, build):
    scheme = build.scheme('percentage', weight_policy='normalize')
    components = build.components(scheme, 'A', 'B')
    build.profile(scheme, 'general', weights={'A': 30, 'B': 20}, components=components)
    section = build.section()
    student = build.student(section)
    build.score(build.item(section, components['A'], 10), student, 8)
    build.score(build.item(section, components['B'], 10), student, 5)

    outcome = compute.run_computation(ctx, 2025, 'Q1', scheme.id, section_id=section.id)

    assert outcome.grades[0].initial_grade == pytest.approx(68)
    assert outcome.grades[0].get_breakdown().total_weight == pytest.approx(50)


def test_perfect_scores_transmute_to_100_with_uneven_weights(ctx, build):
    scheme = build.scheme('k12')
    components = build.components(scheme, 'WW', 'PT', 'QA')
    build.profile(scheme, 'general', weights={'WW': 40.3, 'PT': 43.9, 'QA': 15.8}, components=components)
    build.table(scheme, DEPED_TRANSMUTATION)
    section = build.section()
    student = build.student(section)
    for code in ('WW', 'PT', 'QA'):
        build.score(build.item(section, components[code], 10), student, 10)

    outcome = compute.run_computation(ctx, 2025, 'Q1', scheme.id, section_id=section.id)

    [grade] = outcome.grades
    assert grade.initial_grade == 100
    assert grade.transmuted_grade == 100
    assert grade.get_breakdown().initial_grade_key == 100


def test_weights_outside_strict_band_fail_the_run(ctx, build, k12):
    build.student(k12['section'])
    build.weights(k12['scheme'], k12['profile'], k12['components'], {'A': 60, 'B': 30})

    outcome = _run(ctx, k12)

    assert not outcome.succeeded
    assert isinstance(outcome.error, ConfigurationError)
    assert outcome.run.status == 'failed'
    assert 'sum to 90%' in outcome.run.error_message
    assert ComputedGrade.query.filter_by(compute_run_id=outcome.run.id).count() == 0


def test_unassigned_component_fails_under_strict(ctx, build, k12):
    schemes.create_component(ctx, k12['scheme'].id, 'C', 'Component C')
    build.student(k12['section'])

    outcome = _run(ctx, k12)

    assert outcome.run.status == 'failed'
    assert outcome.run.error_message.endswith('(strict mode): C')


def test_grade_below_lowest_threshold_fails_without_grades(ctx, build, k12):
    transmutation.replace_transmutation_rows(ctx, k12['table'].id, [(50, 75), (100, 100)])
    good = build.student(k12['section'], 'Ana', 'Bautista')
    poor = build.student(k12['section'], 'Juan', 'Dela Cruz')
    item_a = build.item(k12['section'], k12['components']['A'], 10)
    item_b = build.item(k12['section'], k12['components']['B'], 10)
    for student, points in ((good, 10), (poor, 8)):
        build.score(item_a, student, points)
        build.score(item_b, student, status='missing')

    outcome = _run(ctx, k12)

    assert outcome.run.status == 'failed'
    assert 'initial_grade=48.00' in outcome.run.error_message
    assert outcome.grades == []
    assert ComputedGrade.query.count() == 0


def test_run_executes_only_once(ctx, build, k12):
    build.student(k12['section'])
    outcome = _run(ctx, k12)
    assert outcome.succeeded

    with pytest.raises(RunStateError):
        compute.execute_compute_run(ctx, outcome.run.id)


def test_failed_run_cannot_be_retried(ctx, build, k12):
    build.weights(k12['scheme'], k12['profile'], k12['components'], {'A': 10, 'B': 10})
    outcome = _run(ctx, k12)
    assert outcome.run.status == 'failed'

    with pytest.raises(RunStateError):
        compute.execute_compute_run(ctx, outcome.run.id)


@pytest.fixture
def concurrent_finish(monkeypatch):
    """
    Make the next execution lose a race: after it has loaded its plan,
    another execution of the same run completes and commits first.
    """
    real_build_run_plan = compute.build_run_plan

    def _install(error=None):
        def racing_build_run_plan(ctx, run):
            plan = real_build_run_plan(ctx, run)
            monkeypatch.setattr(compute, 'build_run_plan', real_build_run_plan)
            assert compute.execute_compute_run(ctx, run.id).succeeded
            if error is not None:
                raise error
            return plan
        monkeypatch.setattr(compute, 'build_run_plan', racing_build_run_plan)
    return _install


@pytest.mark.parametrize('late_error', [None, ConfigurationError('weights changed')])
def test_losing_executor_leaves_the_completed_run_alone(ctx, build, k12, concurrent_finish, late_error):
    student = build.student(k12['section'])
    build.score(build.item(k12['section'], k12['components']['A'], 10), student, 9)
    build.score(build.item(k12['section'], k12['components']['B'], 10), student, 7)
    run = compute.create_compute_run(ctx, 2025, 'Q1', k12['scheme'].id, section_id=k12['section'].id)
    concurrent_finish(late_error)

    with pytest.raises(RunStateError):
        compute.execute_compute_run(ctx, run.id)

    stored = compute.get_compute_run(ctx, run.id)
    assert stored.status == 'completed'
    assert stored.error_message is None
    assert ComputedGrade.query.filter_by(compute_run_id=run.id).count() == 1


def test_same_as_of_gives_same_grades(ctx, build, k12, backdate):
    student = build.student(k12['section'])
    item_a = build.item(k12['section'], k12['components']['A'], 10)
    item_b = build.item(k12['section'], k12['components']['B'], 10)
    build.score(item_a, student, 8)
    build.score(item_b, student, 5)
    backdate(hours=2)
    as_of = utcnow() - timedelta(hours=1)

    first = _run(ctx, k12, as_of=as_of)
    build.score(item_a, student, 10)
    second = _run(ctx, k12, as_of=as_of)
    latest = _run(ctx, k12)

    assert first.grades[0].initial_grade == pytest.approx(68)
    assert second.grades[0].initial_grade == first.grades[0].initial_grade
    assert second.grades[0].final_numeric_grade == first.grades[0].final_numeric_grade
    assert latest.grades[0].initial_grade == pytest.approx(80)


def test_run_keeps_the_configuration_it_captured(ctx, build, k12):
    student = build.student(k12['section'])
    build.score(build.item(k12['section'], k12['components']['A'], 10), student, 10)
    run = compute.create_compute_run(ctx, 2025, 'Q1', k12['scheme'].id, section_id=k12['section'].id)
    captured_version = run.scheme_version

    # reweighting after creation does not reach this run
    build.weights(k12['scheme'], k12['profile'], k12['components'], {'A': 20, 'B': 80})
    outcome = compute.execute_compute_run(ctx, run.id)

    assert outcome.grades[0].initial_grade == pytest.approx(60)
    assert outcome.run.scheme_version == captured_version
    assert k12['scheme'].version > captured_version


def test_roster_excludes_inactive_members(ctx, build, k12):
    active = build.student(k12['section'], 'Ana', 'Bautista')
    build.student(k12['section'], 'Juan', 'Dela Cruz', status='dropped')

    outcome = _run(ctx, k12)

    assert [g.student_id for g in outcome.grades] == [active.id]


def test_grades_are_listed_by_last_name(ctx, build, k12):
    build.student(k12['section'], 'Zed', 'Zamora')
    build.student(k12['section'], 'Ana', 'Abad')
    outcome = _run(ctx, k12)

    names = [g.student.last_name for g in compute.list_computed_grades(ctx, outcome.run.id)]
    assert names == ['Abad', 'Zamora']


def test_thread_pool_matches_sequential(app, ctx, build, k12):
    students = [build.student(k12['section'], f'S{i}', f'Student{i}') for i in range(5)]
    item = build.item(k12['section'], k12['components']['A'], 10)
    for points, student in enumerate(students, start=5):
        build.score(item, student, points)

    sequential = _run(ctx, k12)
    app.config['GRADEBOOK_COMPUTE_WORKERS'] = 3
    threaded = _run(ctx, k12)

    assert [(g.student_id, g.final_numeric_grade) for g in threaded.grades] \
        == [(g.student_id, g.final_numeric_grade) for g in sequential.grades]


def test_explicit_profile_is_recorded(ctx, build, k12):
    special = build.profile(k12['scheme'], 'special', is_default=False,
                            weights={'A': 50, 'B': 50}, components=k12['components'])
    build.student(k12['section'])

    outcome = _run(ctx, k12, weight_profile_id=special.id)

    assert outcome.run.weight_profile_id == special.id
    assert outcome.run.classification_source == SOURCE_EXPLICIT
    assert outcome.grades[0].get_breakdown().classification_used == 'special'


def test_offering_context_lands_in_breakdown(ctx, build, k12):
    offering = build.offering(k12['section'], code='SCI7', name='Science 7')
    student = build.student(k12['section'])
    item = scores.create_graded_item(ctx, k12['components']['A'].id, 2025, 'Q1', 'Lab', 10,
                                     offering_id=offering.id)
    build.score(item, student, 10)

    outcome = compute.run_computation(ctx, 2025, 'Q1', k12['scheme'].id, offering_id=offering.id)

    breakdown = outcome.grades[0].get_breakdown()
    assert breakdown.section_id == k12['section'].id
    assert breakdown.section_subject_offering_id == offering.id
    assert (breakdown.subject_code, breakdown.subject_name) == ('SCI7', 'Science 7')


def test_unpublished_scheme_is_rejected_before_creating_a_run(ctx, build):
    scheme = build.scheme(publish=False)
    section = build.section()
    with pytest.raises(ConfigurationError):
        compute.create_compute_run(ctx, 2025, 'Q1', scheme.id, section_id=section.id)
    assert ComputeRun.query.count() == 0


def test_k12_without_transmutation_table_is_rejected(ctx, build):
    scheme = build.scheme('k12')
    components = build.components(scheme, 'A')
    build.profile(scheme, 'general', weights={'A': 100}, components=components)
    section = build.section()
    with pytest.raises(ConfigurationError) as excinfo:
        compute.create_compute_run(ctx, 2025, 'Q1', scheme.id, section_id=section.id)
    assert 'requires transmutation_table_id' in str(excinfo.value)


def test_creation_validates_its_inputs(ctx, k12):
    with pytest.raises(ValidationError):
        compute.create_compute_run(ctx, 2025, 'Q1', k12['scheme'].id)
    with pytest.raises(NotFoundError):
        compute.create_compute_run(ctx, 2025, 'Q1', k12['scheme'].id, section_id=404)
    with pytest.raises(NotFoundError):
        compute.create_compute_run(ctx, 2025, 'Q1', 404, section_id=k12['section'].id)
    with pytest.raises(NotFoundError):
        compute.execute_compute_run(ctx, 404)


def test_run_creation_and_completion_are_audited(ctx, build, k12):
    build.student(k12['section'])
    outcome = _run(ctx, k12)

    run_events = [e.event_type for e in list_audit_events(ctx, 'gradebook_compute_run', outcome.run.id)]
    assert run_events == ['gradebook_compute_run_create', 'gradebook_compute_run_update']
    [bulk] = list_audit_events(ctx, 'gradebook_computed_grade')
    assert bulk.get_event_data()['after']['count'] == 1


def test_list_runs_newest_first(ctx, build, k12):
    build.student(k12['section'])
    first = _run(ctx, k12).run
    second = _run(ctx, k12).run
    runs = compute.list_compute_runs(ctx, section_id=k12['section'].id, status='completed')
    assert [r.id for r in runs] == [second.id, first.id]


def test_breakdown_round_trips_and_tolerates_unknown_keys():
    data = {
        'components': [{'component_id': 1, 'component_code': 'A', 'component_label': 'A', 'raw_total': 8,
                        'max_total': 10, 'percent': 80, 'weight_percent': 60, 'weighted_score': 48,
                        'status_counts': {'present': 1}, 'legacy_field': True}],
        'initial_grade': 48, 'final_numeric_grade': 75, 'rounding_mode': 'floor', 'weight_policy': 'strict',
        'total_weight': 100, 'computation_method': 'k12', 'scheme_id': 1, 'scheme_version': 3,
        'as_of': '2025-01-01T00:00:00', 'section_id': 1, 'school_year_id': 2025, 'term_period': 'Q1',
        'initial_grade_raw': 48,
    }
    breakdown = Breakdown.from_dict(data)
    assert breakdown.component('A').excluded_max_points == 0
    assert breakdown.transmuted_grade is None
    assert Breakdown.from_dict(breakdown.to_dict()) == breakdown
