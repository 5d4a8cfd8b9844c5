"""
blueprints/gradebook/routes.py - Gradebook API Blueprint
JSON API over the computation engine: grading configuration, graded items
and scores, compute runs and grade entry links.
Engine errors are turned into JSON responses by the app's error handlers.
"""

from datetime import datetime
from functools import wraps

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from gradebook import compute, linkage, schemes, scores, transmutation
from gradebook.audit import list_audit_events
from gradebook.context import RequestContext
from gradebook.errors import ValidationError

# Initialize the blueprint for gradebook API routes
gradebook_bp = Blueprint('gradebook', __name__)


# Decorator to check if current user is staff
def staff_required(f):
    """
    Decorator to ensure only staff roles can access the route
    """
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if current_user.role not in current_app.config['GRADEBOOK_STAFF_ROLES']:
            return jsonify({'success': False, 'error': 'Access denied. Staff only.'}), 403
        return f(*args, **kwargs)
    return decorated_function


def _ctx():
    return RequestContext.from_user(current_user)


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require(data, *keys):
    missing = [k for k in keys if data.get(k) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


def _parse_datetime(value, label):
    if value in (None, ''):
        return None
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"{label} must be an ISO 8601 timestamp; got {value!r}")


# ========================================
# SCHEMES
# ========================================

@gradebook_bp.route('/schemes', methods=['GET'])
@staff_required
def list_schemes():
    return jsonify({'success': True, 'schemes': [s.to_dict() for s in schemes.list_schemes(_ctx())]})


@gradebook_bp.route('/schemes', methods=['POST'])
@staff_required
def create_scheme():
    data = _payload()
    _require(data, 'scheme_type', 'name')
    scheme = schemes.create_scheme(
        _ctx(),
        scheme_type=data['scheme_type'],
        name=data['name'],
        description=data.get('description'),
        school_id=data.get('school_id'),
        program_id=data.get('program_id'),
        rounding_mode=data.get('rounding_mode'),
        weight_policy=data.get('weight_policy'),
    )
    return jsonify({'success': True, 'scheme': scheme.to_dict()}), 201


@gradebook_bp.route('/schemes/<int:scheme_id>', methods=['GET'])
@staff_required
def get_scheme(scheme_id):
    ctx = _ctx()
    scheme = schemes.get_scheme(ctx, scheme_id)
    return jsonify({
        'success': True,
        'scheme': scheme.to_dict(),
        'components': [c.to_dict() for c in schemes.list_components(ctx, scheme.id)],
        'weight_profiles': [p.to_dict() for p in schemes.list_weight_profiles(ctx, scheme.id)],
    })


@gradebook_bp.route('/schemes/<int:scheme_id>', methods=['DELETE'])
@staff_required
def archive_scheme(scheme_id):
    schemes.archive_scheme(_ctx(), scheme_id)
    return jsonify({'success': True})


@gradebook_bp.route('/schemes/<int:scheme_id>/publish', methods=['POST'])
@staff_required
def publish_scheme(scheme_id):
    scheme = schemes.publish_scheme(_ctx(), scheme_id)
    return jsonify({'success': True, 'scheme': scheme.to_dict()})


@gradebook_bp.route('/schemes/<int:scheme_id>/policies', methods=['PATCH'])
@staff_required
def update_scheme_policies(scheme_id):
    data = _payload()
    scheme = schemes.update_scheme_policies(
        _ctx(), scheme_id,
        rounding_mode=data.get('rounding_mode'),
        weight_policy=data.get('weight_policy'),
    )
    return jsonify({'success': True, 'scheme': scheme.to_dict()})


# ========================================
# COMPONENTS
# ========================================

@gradebook_bp.route('/schemes/<int:scheme_id>/components', methods=['GET'])
@staff_required
def list_components(scheme_id):
    components = schemes.list_components(_ctx(), scheme_id)
    return jsonify({'success': True, 'components': [c.to_dict() for c in components]})


@gradebook_bp.route('/schemes/<int:scheme_id>/components', methods=['POST'])
@staff_required
def create_component(scheme_id):
    data = _payload()
    _require(data, 'code', 'label')
    component = schemes.create_component(
        _ctx(), scheme_id,
        code=data['code'],
        label=data['label'],
        description=data.get('description'),
        display_order=data.get('display_order'),
    )
    return jsonify({'success': True, 'component': component.to_dict()}), 201


@gradebook_bp.route('/components/<int:component_id>', methods=['PATCH'])
@staff_required
def update_component(component_id):
    data = _payload()
    component = schemes.update_component(
        _ctx(), component_id,
        code=data.get('code'),
        label=data.get('label'),
        description=data.get('description'),
        display_order=data.get('display_order'),
    )
    return jsonify({'success': True, 'component': component.to_dict()})


@gradebook_bp.route('/components/<int:component_id>', methods=['DELETE'])
@staff_required
def archive_component(component_id):
    schemes.archive_component(_ctx(), component_id)
    return jsonify({'success': True})


# ========================================
# WEIGHT PROFILES & WEIGHTS
# ========================================

@gradebook_bp.route('/schemes/<int:scheme_id>/weight-profiles', methods=['GET'])
@staff_required
def list_weight_profiles(scheme_id):
    profiles = schemes.list_weight_profiles(_ctx(), scheme_id)
    return jsonify({'success': True, 'weight_profiles': [p.to_dict() for p in profiles]})


@gradebook_bp.route('/schemes/<int:scheme_id>/weight-profiles', methods=['POST'])
@staff_required
def create_weight_profile(scheme_id):
    data = _payload()
    _require(data, 'profile_key', 'profile_label')
    profile = schemes.create_weight_profile(
        _ctx(), scheme_id,
        profile_key=data['profile_key'],
        profile_label=data['profile_label'],
        is_default=bool(data.get('is_default', False)),
        description=data.get('description'),
    )
    return jsonify({'success': True, 'weight_profile': profile.to_dict()}), 201


@gradebook_bp.route('/weight-profiles/<int:profile_id>', methods=['PATCH'])
@staff_required
def update_weight_profile(profile_id):
    data = _payload()
    profile = schemes.update_weight_profile(
        _ctx(), profile_id,
        profile_key=data.get('profile_key'),
        profile_label=data.get('profile_label'),
        description=data.get('description'),
        is_default=data.get('is_default'),
    )
    return jsonify({'success': True, 'weight_profile': profile.to_dict()})


@gradebook_bp.route('/weight-profiles/<int:profile_id>', methods=['DELETE'])
@staff_required
def archive_weight_profile(profile_id):
    schemes.archive_weight_profile(_ctx(), profile_id)
    return jsonify({'success': True})


@gradebook_bp.route('/schemes/<int:scheme_id>/weights', methods=['GET'])
@staff_required
def list_component_weights(scheme_id):
    ctx = _ctx()
    schemes.get_scheme(ctx, scheme_id)
    profile_id = request.args.get('profile_id', type=int)
    weights = schemes.list_component_weights(ctx, scheme_id, profile_id)
    return jsonify({
        'success': True,
        'profile_id': profile_id,
        'weights': [w.to_dict() for w in weights],
        'total_weight': sum(w.weight_percent for w in weights),
    })


@gradebook_bp.route('/schemes/<int:scheme_id>/weights', methods=['PUT'])
@staff_required
def replace_component_weights(scheme_id):
    data = _payload()
    _require(data, 'weights')
    profile_id = data.get('profile_id', request.args.get('profile_id', type=int))
    weights = schemes.replace_component_weights(_ctx(), scheme_id, profile_id, data['weights'])
    return jsonify({'success': True, 'profile_id': profile_id, 'weights': [w.to_dict() for w in weights]})


# ========================================
# TRANSMUTATION
# ========================================

@gradebook_bp.route('/schemes/<int:scheme_id>/transmutation-tables', methods=['GET'])
@staff_required
def list_transmutation_tables(scheme_id):
    tables = transmutation.list_transmutation_tables(_ctx(), scheme_id)
    return jsonify({'success': True, 'transmutation_tables': [t.to_dict() for t in tables]})


@gradebook_bp.route('/schemes/<int:scheme_id>/transmutation-tables', methods=['POST'])
@staff_required
def create_transmutation_table(scheme_id):
    data = _payload()
    table = transmutation.create_transmutation_table(
        _ctx(), scheme_id, version=data.get('version'), description=data.get('description'),
    )
    return jsonify({'success': True, 'transmutation_table': table.to_dict()}), 201


@gradebook_bp.route('/transmutation-tables/<int:table_id>/publish', methods=['POST'])
@staff_required
def publish_transmutation_table(table_id):
    table = transmutation.publish_transmutation_table(_ctx(), table_id)
    return jsonify({'success': True, 'transmutation_table': table.to_dict()})


@gradebook_bp.route('/transmutation-tables/<int:table_id>', methods=['DELETE'])
@staff_required
def archive_transmutation_table(table_id):
    transmutation.archive_transmutation_table(_ctx(), table_id)
    return jsonify({'success': True})


@gradebook_bp.route('/transmutation-tables/<int:table_id>/rows', methods=['GET'])
@staff_required
def list_transmutation_rows(table_id):
    ctx = _ctx()
    table = transmutation.get_transmutation_table(ctx, table_id)
    rows = transmutation.list_transmutation_rows(ctx, table.id)
    return jsonify({'success': True, 'transmutation_table': table.to_dict(), 'rows': [r.to_dict() for r in rows]})


@gradebook_bp.route('/transmutation-tables/<int:table_id>/rows', methods=['PUT'])
@staff_required
def replace_transmutation_rows(table_id):
    data = _payload()
    _require(data, 'rows')
    rows = transmutation.replace_transmutation_rows(_ctx(), table_id, data['rows'])
    return jsonify({'success': True, 'rows': [r.to_dict() for r in rows]})


# ========================================
# GRADED ITEMS & SCORES
# ========================================

@gradebook_bp.route('/graded-items', methods=['GET'])
@staff_required
def list_graded_items():
    items = scores.list_graded_items(
        _ctx(),
        section_id=request.args.get('section_id', type=int),
        offering_id=request.args.get('offering_id', type=int),
        term_period=request.args.get('term_period'),
        component_id=request.args.get('component_id', type=int),
    )
    return jsonify({'success': True, 'graded_items': [i.to_dict() for i in items]})


@gradebook_bp.route('/graded-items', methods=['POST'])
@staff_required
def create_graded_item():
    data = _payload()
    _require(data, 'component_id', 'school_year_id', 'term_period', 'title', 'max_points')
    item = scores.create_graded_item(
        _ctx(),
        component_id=data['component_id'],
        school_year_id=data['school_year_id'],
        term_period=data['term_period'],
        title=data['title'],
        max_points=data['max_points'],
        section_id=data.get('section_id'),
        offering_id=data.get('offering_id'),
        description=data.get('description'),
        due_at=_parse_datetime(data.get('due_at'), 'due_at'),
    )
    return jsonify({'success': True, 'graded_item': item.to_dict()}), 201


@gradebook_bp.route('/graded-items/<int:item_id>', methods=['PATCH'])
@staff_required
def update_graded_item(item_id):
    data = _payload()
    item = scores.update_graded_item(
        _ctx(), item_id,
        title=data.get('title'),
        description=data.get('description'),
        max_points=data.get('max_points'),
        due_at=_parse_datetime(data.get('due_at'), 'due_at'),
        component_id=data.get('component_id'),
    )
    return jsonify({'success': True, 'graded_item': item.to_dict()})


@gradebook_bp.route('/graded-items/<int:item_id>', methods=['DELETE'])
@staff_required
def archive_graded_item(item_id):
    scores.archive_graded_item(_ctx(), item_id)
    return jsonify({'success': True})


@gradebook_bp.route('/graded-items/<int:item_id>/scores', methods=['GET'])
@staff_required
def list_graded_scores(item_id):
    graded_scores = scores.list_graded_scores(_ctx(), item_id)
    return jsonify({'success': True, 'scores': [s.to_dict() for s in graded_scores]})


@gradebook_bp.route('/graded-items/<int:item_id>/scores', methods=['PUT'])
@staff_required
def upsert_graded_scores(item_id):
    data = _payload()
    entries = data.get('scores')
    if not isinstance(entries, list) or not entries:
        raise ValidationError("scores must be a non-empty list")
    graded_scores = scores.bulk_upsert_graded_scores(_ctx(), item_id, entries)
    return jsonify({'success': True, 'scores': [s.to_dict() for s in graded_scores]})


# ========================================
# COMPUTE RUNS
# ========================================

def _outcome_response(outcome):
    if not outcome.succeeded:
        return jsonify({'success': False, 'error': str(outcome.error), 'run': outcome.run.to_dict()}), 422
    return jsonify({
        'success': True,
        'run': outcome.run.to_dict(),
        'grades': [g.to_dict() for g in outcome.grades],
    }), 201


@gradebook_bp.route('/compute-runs', methods=['GET'])
@staff_required
def list_compute_runs():
    runs = compute.list_compute_runs(
        _ctx(),
        section_id=request.args.get('section_id', type=int),
        term_period=request.args.get('term_period'),
        status=request.args.get('status'),
        scheme_id=request.args.get('scheme_id', type=int),
    )
    return jsonify({'success': True, 'runs': [r.to_dict() for r in runs]})


@gradebook_bp.route('/compute-runs', methods=['POST'])
@staff_required
def create_compute_run():
    """
    Create a run and (unless "execute" is false) compute it right away
    """
    data = _payload()
    _require(data, 'school_year_id', 'term_period', 'scheme_id')
    ctx = _ctx()
    run = compute.create_compute_run(
        ctx,
        school_year_id=data['school_year_id'],
        term_period=data['term_period'],
        scheme_id=data['scheme_id'],
        section_id=data.get('section_id'),
        offering_id=data.get('offering_id'),
        weight_profile_id=data.get('weight_profile_id'),
        transmutation_table_id=data.get('transmutation_table_id'),
        as_of=_parse_datetime(data.get('as_of'), 'as_of'),
    )
    if data.get('execute', True) is False:
        return jsonify({'success': True, 'run': run.to_dict()}), 201
    return _outcome_response(compute.execute_compute_run(ctx, run.id))


@gradebook_bp.route('/compute-runs/<int:run_id>/execute', methods=['POST'])
@staff_required
def execute_compute_run(run_id):
    return _outcome_response(compute.execute_compute_run(_ctx(), run_id))


@gradebook_bp.route('/compute-runs/<int:run_id>', methods=['GET'])
@staff_required
def get_compute_run(run_id):
    ctx = _ctx()
    run = compute.get_compute_run(ctx, run_id)
    grades = compute.list_computed_grades(ctx, run.id)
    return jsonify({'success': True, 'run': run.to_dict(), 'grades': [g.to_dict() for g in grades]})


# ========================================
# GRADE ENTRY LINKS & AUDIT
# ========================================

@gradebook_bp.route('/grade-entry-links', methods=['GET'])
@staff_required
def list_grade_entry_links():
    links = linkage.list_grade_entry_links(
        _ctx(),
        computed_grade_id=request.args.get('computed_grade_id', type=int),
        grade_entry_id=request.args.get('grade_entry_id'),
    )
    return jsonify({'success': True, 'links': [link.to_dict() for link in links]})


@gradebook_bp.route('/grade-entry-links', methods=['POST'])
@staff_required
def link_computed_grade():
    data = _payload()
    _require(data, 'computed_grade_id', 'grade_entry_id')
    link = linkage.link_computed_grade(_ctx(), data['computed_grade_id'], data['grade_entry_id'])
    return jsonify({'success': True, 'link': link.to_dict()}), 201


@gradebook_bp.route('/audit-events', methods=['GET'])
@staff_required
def audit_events():
    events = list_audit_events(
        _ctx(),
        entity_type=request.args.get('entity_type'),
        entity_id=request.args.get('entity_id'),
    )
    return jsonify({
        'success': True,
        'events': [
            {
                'id': e.id,
                'event_type': e.event_type,
                'actor_id': e.actor_id,
                'target_entity_type': e.target_entity_type,
                'target_entity_id': e.target_entity_id,
                'event_data': e.get_event_data(),
                'created_at': e.created_at.isoformat() if e.created_at else None,
            }
            for e in events
        ],
    })
