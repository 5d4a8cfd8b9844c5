"""
Configuration store: grading schemes, components, weight profiles and
component weights.

Every mutation commits its own transaction together with an audit event.
Structural changes (components, weights, policies) bump the scheme version
so runs that captured an older version stay traceable.
"""

import logging

from extensions import db
from gradebook.audit import record_audit, snapshot
from gradebook.errors import ConfigurationError, NotFoundError, ValidationError
from gradebook.versioning import commit_replacement, start_replacement, supersede, weights_scope
from models import (
    ROUNDING_MODES, SCHEME_TYPES, WEIGHT_POLICIES,
    ComponentWeight, GradingComponent, GradingScheme, WeightProfile, utcnow,
)

logger = logging.getLogger(__name__)


def _require_choice(value, choices, label):
    if value not in choices:
        raise ValidationError(f"{label} must be one of {', '.join(choices)}; got {value!r}")


# ============================================================================
# Schemes
# ============================================================================

def list_schemes(ctx):
    return GradingScheme.query.filter_by(
        organization_id=ctx.organization_id, archived_at=None
    ).order_by(GradingScheme.created_at.desc(), GradingScheme.id.desc()).all()


def get_scheme(ctx, scheme_id):
    scheme = GradingScheme.query.filter_by(
        id=scheme_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if scheme is None:
        raise NotFoundError(f"Scheme {scheme_id} not found")
    return scheme


def create_scheme(ctx, scheme_type, name, description=None, school_id=None, program_id=None,
                  rounding_mode=None, weight_policy=None):
    _require_choice(scheme_type, SCHEME_TYPES, 'scheme_type')
    if rounding_mode is not None:
        _require_choice(rounding_mode, ROUNDING_MODES, 'rounding_mode')
    if weight_policy is not None:
        _require_choice(weight_policy, WEIGHT_POLICIES, 'weight_policy')
    if not name or not name.strip():
        raise ValidationError("Scheme name is required")

    scheme = GradingScheme(
        organization_id=ctx.organization_id,
        school_id=school_id if school_id is not None else ctx.school_id,
        program_id=program_id,
        scheme_type=scheme_type,
        name=name.strip(),
        description=description,
        version=1,
        rounding_mode=rounding_mode,
        weight_policy=weight_policy,
        created_by=ctx.actor_id,
    )
    db.session.add(scheme)
    db.session.flush()
    record_audit(ctx, 'create', 'gradebook_scheme', scheme.id, after=snapshot(scheme))
    db.session.commit()
    return scheme


def publish_scheme(ctx, scheme_id):
    scheme = get_scheme(ctx, scheme_id)
    before = snapshot(scheme)
    scheme.published_at = utcnow()
    scheme.updated_by = ctx.actor_id
    record_audit(ctx, 'update', 'gradebook_scheme', scheme.id, before=before, after=snapshot(scheme),
                 event_data={'operation': 'publish'})
    db.session.commit()
    return scheme


def update_scheme_policies(ctx, scheme_id, rounding_mode=None, weight_policy=None):
    """Change rounding mode and/or weight policy (a structural change)"""
    scheme = get_scheme(ctx, scheme_id)
    if rounding_mode is None and weight_policy is None:
        raise ValidationError("Nothing to update: give rounding_mode and/or weight_policy")

    before = snapshot(scheme)
    if rounding_mode is not None:
        _require_choice(rounding_mode, ROUNDING_MODES, 'rounding_mode')
        scheme.rounding_mode = rounding_mode
    if weight_policy is not None:
        _require_choice(weight_policy, WEIGHT_POLICIES, 'weight_policy')
        scheme.weight_policy = weight_policy
    scheme.bump_version(ctx.actor_id)

    record_audit(ctx, 'update', 'gradebook_scheme', scheme.id, before=before, after=snapshot(scheme))
    db.session.commit()
    return scheme


def archive_scheme(ctx, scheme_id):
    scheme = get_scheme(ctx, scheme_id)
    before = snapshot(scheme)
    scheme.archived_at = utcnow()
    scheme.updated_by = ctx.actor_id
    record_audit(ctx, 'archive', 'gradebook_scheme', scheme.id, before=before, after=snapshot(scheme))
    db.session.commit()


# ============================================================================
# Components
# ============================================================================

def list_components(ctx, scheme_id):
    return GradingComponent.query.filter_by(
        organization_id=ctx.organization_id, scheme_id=scheme_id, archived_at=None
    ).order_by(GradingComponent.display_order.asc(), GradingComponent.id.asc()).all()


def get_component(ctx, component_id):
    component = GradingComponent.query.filter_by(
        id=component_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if component is None:
        raise NotFoundError(f"Component {component_id} not found")
    return component


def _ensure_unique_code(scheme_id, code, exclude_id=None):
    query = GradingComponent.query.filter_by(scheme_id=scheme_id, code=code, archived_at=None)
    if exclude_id is not None:
        query = query.filter(GradingComponent.id != exclude_id)
    if query.first() is not None:
        raise ConfigurationError(f"Component code {code!r} already exists in scheme {scheme_id}")


def create_component(ctx, scheme_id, code, label, description=None, display_order=None):
    scheme = get_scheme(ctx, scheme_id)
    if not code or not label:
        raise ValidationError("Component code and label are required")
    _ensure_unique_code(scheme.id, code)

    if display_order is None:
        display_order = len(list_components(ctx, scheme.id))

    component = GradingComponent(
        organization_id=ctx.organization_id,
        scheme_id=scheme.id,
        code=code,
        label=label,
        description=description,
        display_order=display_order,
        created_by=ctx.actor_id,
    )
    db.session.add(component)
    scheme.bump_version(ctx.actor_id)
    db.session.flush()
    record_audit(ctx, 'create', 'gradebook_component', component.id, after=snapshot(component),
                 event_data={'scheme_version': scheme.version})
    db.session.commit()
    return component


def update_component(ctx, component_id, code=None, label=None, description=None, display_order=None):
    component = get_component(ctx, component_id)
    before = snapshot(component)

    if code is not None and code != component.code:
        _ensure_unique_code(component.scheme_id, code, exclude_id=component.id)
        component.code = code
    if label is not None:
        component.label = label
    if description is not None:
        component.description = description
    if display_order is not None:
        component.display_order = display_order
    component.updated_by = ctx.actor_id
    component.scheme.bump_version(ctx.actor_id)

    record_audit(ctx, 'update', 'gradebook_component', component.id, before=before, after=snapshot(component),
                 event_data={'scheme_version': component.scheme.version})
    db.session.commit()
    return component


def archive_component(ctx, component_id):
    component = get_component(ctx, component_id)
    before = snapshot(component)
    component.archived_at = utcnow()
    component.updated_by = ctx.actor_id
    component.scheme.bump_version(ctx.actor_id)
    record_audit(ctx, 'archive', 'gradebook_component', component.id, before=before, after=snapshot(component),
                 event_data={'scheme_version': component.scheme.version})
    db.session.commit()


# ============================================================================
# Weight profiles
# ============================================================================

def list_weight_profiles(ctx, scheme_id):
    return WeightProfile.query.filter_by(
        organization_id=ctx.organization_id, scheme_id=scheme_id, archived_at=None
    ).order_by(WeightProfile.is_default.desc(), WeightProfile.profile_key.asc()).all()


def get_weight_profile(ctx, profile_id):
    profile = WeightProfile.query.filter_by(
        id=profile_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if profile is None:
        raise NotFoundError(f"Weight profile {profile_id} not found")
    return profile


def _clear_other_defaults(ctx, scheme_id, keep_id):
    """At most one default profile per scheme"""
    cleared = []
    others = WeightProfile.query.filter(
        WeightProfile.scheme_id == scheme_id,
        WeightProfile.archived_at.is_(None),
        WeightProfile.is_default.is_(True),
        WeightProfile.id != keep_id,
    )
    for other in others:
        other.is_default = False
        other.updated_by = ctx.actor_id
        cleared.append(other.id)
    return cleared


def create_weight_profile(ctx, scheme_id, profile_key, profile_label, is_default=False, description=None):
    scheme = get_scheme(ctx, scheme_id)
    if not profile_key or not profile_label:
        raise ValidationError("profile_key and profile_label are required")
    existing = WeightProfile.query.filter_by(scheme_id=scheme.id, profile_key=profile_key, archived_at=None).first()
    if existing is not None:
        raise ConfigurationError(f"Weight profile {profile_key!r} already exists in scheme {scheme.id}")

    profile = WeightProfile(
        organization_id=ctx.organization_id,
        scheme_id=scheme.id,
        profile_key=profile_key,
        profile_label=profile_label,
        description=description,
        is_default=bool(is_default),
        created_by=ctx.actor_id,
    )
    db.session.add(profile)
    db.session.flush()
    cleared = _clear_other_defaults(ctx, scheme.id, profile.id) if profile.is_default else []
    record_audit(ctx, 'create', 'gradebook_weight_profile', profile.id, after=snapshot(profile),
                 event_data={'cleared_defaults': cleared})
    db.session.commit()
    return profile


def update_weight_profile(ctx, profile_id, profile_key=None, profile_label=None, description=None,
                          is_default=None):
    profile = get_weight_profile(ctx, profile_id)
    before = snapshot(profile)

    if profile_key is not None and profile_key != profile.profile_key:
        clash = WeightProfile.query.filter_by(
            scheme_id=profile.scheme_id, profile_key=profile_key, archived_at=None
        ).first()
        if clash is not None:
            raise ConfigurationError(f"Weight profile {profile_key!r} already exists in scheme {profile.scheme_id}")
        profile.profile_key = profile_key
    if profile_label is not None:
        profile.profile_label = profile_label
    if description is not None:
        profile.description = description

    cleared = []
    if is_default is not None:
        profile.is_default = bool(is_default)
        if profile.is_default:
            cleared = _clear_other_defaults(ctx, profile.scheme_id, profile.id)
    profile.updated_by = ctx.actor_id

    record_audit(ctx, 'update', 'gradebook_weight_profile', profile.id, before=before, after=snapshot(profile),
                 event_data={'cleared_defaults': cleared})
    db.session.commit()
    return profile


def archive_weight_profile(ctx, profile_id):
    """Archive a profile together with its active weights"""
    profile = get_weight_profile(ctx, profile_id)
    before = snapshot(profile)
    archived_weights = supersede(ctx, weights_scope(profile.scheme_id, profile.id),
                                 _active_weights_query(ctx, profile.scheme_id, profile.id))
    profile.archived_at = utcnow()
    profile.is_default = False
    profile.updated_by = ctx.actor_id

    record_audit(ctx, 'archive', 'gradebook_weight_profile', profile.id, before=before, after=snapshot(profile),
                 event_data={'archived_weights': archived_weights})
    db.session.commit()


# ============================================================================
# Component weights
# ============================================================================

def _active_weights_query(ctx, scheme_id, profile_id):
    return ComponentWeight.query.filter_by(
        organization_id=ctx.organization_id,
        scheme_id=scheme_id,
        profile_id=profile_id,
        archived_at=None,
    )


def list_component_weights(ctx, scheme_id, profile_id=None):
    """Active weights of a scheme for one profile (None = profile-less weights)"""
    return _active_weights_query(ctx, scheme_id, profile_id).order_by(ComponentWeight.component_id).all()


def load_weight_version(ctx, config_version_id):
    """All weights of one configuration generation, archived or not"""
    if config_version_id is None:
        return []
    return ComponentWeight.query.filter_by(
        organization_id=ctx.organization_id, config_version_id=config_version_id
    ).order_by(ComponentWeight.component_id).all()


def _weight_pairs(weights):
    if isinstance(weights, dict):
        return list(weights.items())
    pairs = []
    for entry in weights:
        if isinstance(entry, dict):
            pairs.append((entry.get('component_id'), entry.get('weight_percent')))
        else:
            pairs.append(tuple(entry))
    return pairs


def replace_component_weights(ctx, scheme_id, profile_id, weights):
    """
    Replace the full weight set of (scheme, profile) as one batch.

    Args:
        weights: {component_id: weight_percent} or a list of
                 {'component_id': ..., 'weight_percent': ...}

    Returns:
        list[ComponentWeight]: the new active rows
    """
    scheme = get_scheme(ctx, scheme_id)
    if profile_id is not None:
        profile = get_weight_profile(ctx, profile_id)
        if profile.scheme_id != scheme.id:
            raise ValidationError(f"Weight profile {profile_id} does not belong to scheme {scheme.id}")

    pairs = _weight_pairs(weights)
    if not pairs:
        raise ValidationError("A weight set needs at least one component weight")

    active_ids = {c.id for c in list_components(ctx, scheme.id)}
    seen = set()
    cleaned = []
    for component_id, weight_percent in pairs:
        try:
            component_id = int(component_id)
            weight_percent = float(weight_percent)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid weight entry: component={component_id!r} weight={weight_percent!r}")
        if component_id in seen:
            raise ValidationError(f"Component {component_id} appears more than once in the weight set")
        if component_id not in active_ids:
            raise ValidationError(f"Component {component_id} is not an active component of scheme {scheme.id}")
        if not 0 <= weight_percent <= 100:
            raise ValidationError(f"Weight for component {component_id} must be between 0 and 100; got {weight_percent}")
        seen.add(component_id)
        cleaned.append((component_id, weight_percent))

    scope_key = weights_scope(scheme.id, profile_id)
    before = [w.to_dict() for w in list_component_weights(ctx, scheme.id, profile_id)]
    version = start_replacement(ctx, 'weights', scope_key, _active_weights_query(ctx, scheme.id, profile_id))

    rows = []
    for component_id, weight_percent in cleaned:
        row = ComponentWeight(
            organization_id=ctx.organization_id,
            scheme_id=scheme.id,
            profile_id=profile_id,
            component_id=component_id,
            config_version_id=version.id,
            weight_percent=weight_percent,
            created_by=ctx.actor_id,
        )
        db.session.add(row)
        rows.append(row)
    scheme.bump_version(ctx.actor_id)
    db.session.flush()

    record_audit(ctx, 'update', 'gradebook_component_weights', version.id,
                 before={'weights': before},
                 after={'weights': [r.to_dict() for r in rows]},
                 event_data={'scope_key': scope_key, 'version_number': version.version_number,
                             'scheme_version': scheme.version})
    commit_replacement(scope_key)

    total = sum(w for _, w in cleaned)
    logger.info("Scheme %s profile %s: %s weights replaced (total %.2f%%)", scheme.id, profile_id, len(rows), total)
    return rows
