"""
Batch replacement of row sets through ConfigurationVersion generations.

Replacing a weight set or transmutation row set never edits rows in place:
the current generation is superseded, its rows archived, and a new
generation inserted, all inside one transaction. Readers therefore see
either the old set or the new one, never an empty set.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from gradebook.errors import ConfigurationError
from models import ConfigurationVersion, utcnow

logger = logging.getLogger(__name__)


def weights_scope(scheme_id, profile_id):
    return f"weights:{scheme_id}:{profile_id if profile_id is not None else 'default'}"


def transmutation_scope(table_id):
    return f"transmutation:{table_id}"


def active_version(ctx, scope_key):
    """Current (non-superseded) generation for a scope, or None"""
    return ConfigurationVersion.query.filter_by(
        organization_id=ctx.organization_id,
        scope_key=scope_key,
        superseded_at=None,
    ).order_by(ConfigurationVersion.version_number.desc()).first()


def supersede(ctx, scope_key, active_rows):
    """
    Close the current generation of scope_key and archive its rows.

    Returns:
        int: number of rows archived
    """
    now = utcnow()
    for previous in ConfigurationVersion.query.filter_by(scope_key=scope_key, superseded_at=None):
        previous.superseded_at = now
        previous.updated_by = ctx.actor_id
    return active_rows.update({'archived_at': now}, synchronize_session=False)


def start_replacement(ctx, kind, scope_key, active_rows):
    """
    Supersede the current generation of scope_key and open the next one.

    Args:
        ctx: RequestContext
        kind: 'weights' or 'transmutation'
        scope_key: see weights_scope() / transmutation_scope()
        active_rows: query of the scope's currently active rows (archived here)

    Returns:
        ConfigurationVersion: the new generation (flushed, so it has an id)
    """
    archived = supersede(ctx, scope_key, active_rows)

    last_number = db.session.query(func.max(ConfigurationVersion.version_number)) \
        .filter(ConfigurationVersion.scope_key == scope_key).scalar() or 0

    version = ConfigurationVersion(
        organization_id=ctx.organization_id,
        kind=kind,
        scope_key=scope_key,
        version_number=last_number + 1,
        created_by=ctx.actor_id,
    )
    db.session.add(version)
    try:
        db.session.flush()
    except IntegrityError as exc:
        _reject_concurrent(scope_key, exc)

    logger.info("%s: version %s replaces %s archived rows", scope_key, version.version_number, archived)
    return version


def commit_replacement(scope_key):
    """Commit a replacement, turning a version collision into a configuration error"""
    try:
        db.session.commit()
    except IntegrityError as exc:
        _reject_concurrent(scope_key, exc)


def _reject_concurrent(scope_key, exc):
    db.session.rollback()
    logger.warning("%s: concurrent replacement rejected (%s)", scope_key, exc.orig)
    raise ConfigurationError(
        f"Configuration {scope_key} was modified concurrently; reload and retry"
    ) from exc
