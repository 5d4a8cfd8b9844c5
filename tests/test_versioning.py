"""Tests for batch replacement when two writers race for the same scope."""

import pytest
from sqlalchemy import func

from gradebook import schemes, transmutation, versioning
from gradebook.errors import ConfigurationError
from gradebook.versioning import active_version, transmutation_scope, weights_scope


@pytest.fixture
def stale_version_counter(monkeypatch):
    """
    Make later replacements read the version counter one generation behind,
    as if another writer had taken the next number in the meantime.
    """
    class _StaleFunc:
        @staticmethod
        def max(column):
            return func.max(column) - 1

    def _install():
        monkeypatch.setattr(versioning, 'func', _StaleFunc)
    return _install


def test_colliding_weight_replacement_keeps_the_previous_set(ctx, build, stale_version_counter):
    scheme = build.scheme()
    components = build.components(scheme, 'WW', 'PT')
    profile = build.profile(scheme, 'general', weights={'WW': 40, 'PT': 60}, components=components)
    scope_key = weights_scope(scheme.id, profile.id)
    current_id = active_version(ctx, scope_key).id
    stale_version_counter()

    with pytest.raises(ConfigurationError) as excinfo:
        build.weights(scheme, profile, components, {'WW': 30, 'PT': 70})
    assert 'modified concurrently' in str(excinfo.value)

    still_active = active_version(ctx, scope_key)
    assert still_active.id == current_id
    assert still_active.superseded_at is None
    weights = schemes.list_component_weights(ctx, scheme.id, profile.id)
    assert sorted(w.weight_percent for w in weights) == [40, 60]
    assert all(w.config_version_id == current_id for w in weights)


def test_colliding_row_replacement_keeps_the_previous_rows(ctx, build, stale_version_counter):
    scheme = build.scheme()
    table = build.table(scheme, [(0, 60), (50, 80)])
    current_id = active_version(ctx, transmutation_scope(table.id)).id
    stale_version_counter()

    with pytest.raises(ConfigurationError):
        transmutation.replace_transmutation_rows(ctx, table.id, [(0, 65), (60, 85)])

    assert active_version(ctx, transmutation_scope(table.id)).id == current_id
    rows = transmutation.list_transmutation_rows(ctx, table.id)
    assert [(r.initial_grade, r.transmuted_grade) for r in rows] == [(0, 60), (50, 80)]
