"""Tests for scheme, component, profile and weight configuration."""

import pytest

from gradebook import schemes
from gradebook.audit import list_audit_events
from gradebook.errors import ConfigurationError, NotFoundError, ValidationError
from gradebook.versioning import active_version, weights_scope
from models import ComponentWeight


def test_scheme_policy_defaults(ctx, build):
    k12 = build.scheme('k12')
    higher_ed = build.scheme('higher-ed')
    percentage = build.scheme('percentage')
    assert (k12.effective_rounding_mode, k12.effective_weight_policy) == ('floor', 'strict')
    assert higher_ed.effective_rounding_mode == 'round'
    assert k12.requires_transmutation and higher_ed.requires_transmutation
    assert not percentage.requires_transmutation


def test_scheme_choices_are_validated(ctx):
    with pytest.raises(ValidationError):
        schemes.create_scheme(ctx, 'deped', 'Bad type')
    with pytest.raises(ValidationError):
        schemes.create_scheme(ctx, 'k12', 'Bad policy', weight_policy='lenient')
    with pytest.raises(ValidationError):
        schemes.create_scheme(ctx, 'k12', '   ')


def test_publish_and_archive(ctx, build):
    scheme = build.scheme(publish=False)
    assert not scheme.is_published
    assert schemes.publish_scheme(ctx, scheme.id).is_published

    schemes.archive_scheme(ctx, scheme.id)
    with pytest.raises(NotFoundError):
        schemes.get_scheme(ctx, scheme.id)


def test_structural_changes_bump_the_scheme_version(ctx, build):
    scheme = build.scheme()
    assert scheme.version == 1

    components = build.components(scheme, 'WW', 'PT')
    assert scheme.version == 3

    schemes.update_component(ctx, components['WW'].id, label='Written Works')
    schemes.update_scheme_policies(ctx, scheme.id, weight_policy='normalize')
    assert scheme.version == 5
    assert scheme.effective_weight_policy == 'normalize'

    build.weights(scheme, None, components, {'WW': 40, 'PT': 60})
    schemes.archive_component(ctx, components['PT'].id)
    assert scheme.version == 7


def test_component_codes_are_unique_among_active_components(ctx, build):
    scheme = build.scheme()
    components = build.components(scheme, 'WW')
    with pytest.raises(ConfigurationError):
        schemes.create_component(ctx, scheme.id, 'WW', 'Again')

    schemes.archive_component(ctx, components['WW'].id)
    replacement = schemes.create_component(ctx, scheme.id, 'WW', 'Written Work v2')
    assert [c.id for c in schemes.list_components(ctx, scheme.id)] == [replacement.id]


def test_only_one_default_profile(ctx, build):
    scheme = build.scheme()
    first = build.profile(scheme, 'general', is_default=True)
    second = build.profile(scheme, 'core', is_default=True)
    assert not first.is_default
    assert second.is_default

    schemes.update_weight_profile(ctx, first.id, is_default=True)
    assert [p.profile_key for p in schemes.list_weight_profiles(ctx, scheme.id) if p.is_default] == ['general']


def test_duplicate_profile_key_is_rejected(ctx, build):
    scheme = build.scheme()
    build.profile(scheme, 'core')
    with pytest.raises(ConfigurationError):
        schemes.create_weight_profile(ctx, scheme.id, 'core', 'Core again')


def test_replace_weights_versions_the_batch(ctx, build):
    scheme = build.scheme()
    components = build.components(scheme, 'WW', 'PT')
    profile = build.profile(scheme, 'general')

    first = build.weights(scheme, profile, components, {'WW': 40, 'PT': 60})
    second = build.weights(scheme, profile, components, {'WW': 30, 'PT': 70})

    version = active_version(ctx, weights_scope(scheme.id, profile.id))
    assert version.version_number == 2
    assert {w.component_id: w.weight_percent for w in schemes.list_component_weights(ctx, scheme.id, profile.id)} \
        == {components['WW'].id: 30, components['PT'].id: 70}
    assert all(w.config_version_id == version.id for w in second)

    # previous generation archived, not deleted
    old = schemes.load_weight_version(ctx, first[0].config_version_id)
    assert sorted(w.weight_percent for w in old) == [40, 60]
    assert all(w.archived_at is not None for w in old)


def test_replace_weights_is_audited(ctx, build):
    scheme = build.scheme()
    components = build.components(scheme, 'WW', 'PT')
    rows = build.weights(scheme, None, components, {'WW': 50, 'PT': 50})

    events = list_audit_events(ctx, entity_type='gradebook_component_weights')
    assert len(events) == 1
    event = events[0]
    assert event.event_type == 'gradebook_component_weights_update'
    assert event.actor_id == ctx.actor_id
    data = event.get_event_data()
    assert data['action'] == 'update'
    assert data['before'] == {'weights': []}
    assert len(data['after']['weights']) == 2
    assert data['scope_key'] == weights_scope(scheme.id, None)
    assert event.target_entity_id == str(rows[0].config_version_id)


def test_every_configuration_mutation_emits_an_audit_event(ctx, build):
    scheme = build.scheme()
    build.components(scheme, 'WW')
    build.profile(scheme, 'general')
    event_types = [e.event_type for e in list_audit_events(ctx)]
    assert event_types == [
        'gradebook_scheme_create',
        'gradebook_scheme_update',
        'gradebook_component_create',
        'gradebook_weight_profile_create',
    ]


@pytest.mark.parametrize('weights', [
    {},
    {'bogus': 10},
])
def test_invalid_weight_sets_are_rejected(ctx, build, weights):
    scheme = build.scheme()
    build.components(scheme, 'WW')
    with pytest.raises(ValidationError):
        schemes.replace_component_weights(ctx, scheme.id, None, weights)


def test_weight_must_target_an_active_component_of_the_scheme(ctx, build):
    scheme = build.scheme()
    other = build.scheme(name='Other')
    foreign = build.components(other, 'X')['X']
    components = build.components(scheme, 'WW')

    with pytest.raises(ValidationError):
        schemes.replace_component_weights(ctx, scheme.id, None, {foreign.id: 100})
    with pytest.raises(ValidationError):
        schemes.replace_component_weights(ctx, scheme.id, None, {components['WW'].id: 120})
    with pytest.raises(ValidationError):
        schemes.replace_component_weights(ctx, scheme.id, None, [
            {'component_id': components['WW'].id, 'weight_percent': 50},
            {'component_id': components['WW'].id, 'weight_percent': 50},
        ])


def test_archiving_a_profile_archives_its_weights(ctx, build):
    scheme = build.scheme()
    components = build.components(scheme, 'WW', 'PT')
    profile = build.profile(scheme, 'general', weights={'WW': 50, 'PT': 50}, components=components)

    schemes.archive_weight_profile(ctx, profile.id)

    assert ComponentWeight.query.filter_by(profile_id=profile.id, archived_at=None).count() == 0
    assert active_version(ctx, weights_scope(scheme.id, profile.id)) is None
    with pytest.raises(NotFoundError):
        schemes.get_weight_profile(ctx, profile.id)


def test_other_organizations_cannot_see_a_scheme(ctx, build):
    from gradebook.context import RequestContext

    scheme = build.scheme()
    with pytest.raises(NotFoundError):
        schemes.get_scheme(RequestContext(organization_id=ctx.organization_id + 1), scheme.id)
