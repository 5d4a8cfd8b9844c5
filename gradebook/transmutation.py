"""
Transmutation tables: mapping a raw weighted percentage to the official
reported grade through floor thresholds.
"""

import logging

from sqlalchemy import func

from extensions import db
from gradebook.audit import record_audit, snapshot
from gradebook.errors import ConfigurationError, NotFoundError, ValidationError
from gradebook.schemes import get_scheme
from gradebook.versioning import active_version, commit_replacement, start_replacement, transmutation_scope
from models import TransmutationRow, TransmutationTable, utcnow

logger = logging.getLogger(__name__)


def lookup_transmuted_grade(rows, raw_grade):
    """
    Find the row whose threshold is the greatest initial_grade <= raw_grade.

    Args:
        rows: iterable of objects with initial_grade / transmuted_grade
        raw_grade: weighted percentage (0-100)

    Returns:
        The matching row

    Raises:
        ConfigurationError: raw_grade lies below every threshold
    """
    ordered = sorted(rows, key=lambda r: r.initial_grade, reverse=True)
    for row in ordered:
        if row.initial_grade <= raw_grade:
            return row
    lowest = ordered[-1].initial_grade if ordered else None
    raise ConfigurationError(
        f"Transmutation row not found for initial_grade={raw_grade:.2f}. "
        f"No row with initial_grade <= {raw_grade:.2f} exists in the transmutation table"
        + (f" (lowest threshold is {lowest:g})" if lowest is not None else "")
    )


# ============================================================================
# Tables
# ============================================================================

def list_transmutation_tables(ctx, scheme_id):
    return TransmutationTable.query.filter_by(
        organization_id=ctx.organization_id, scheme_id=scheme_id, archived_at=None
    ).order_by(TransmutationTable.version.desc()).all()


def get_transmutation_table(ctx, table_id):
    table = TransmutationTable.query.filter_by(
        id=table_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if table is None:
        raise NotFoundError(f"Transmutation table {table_id} not found")
    return table


def create_transmutation_table(ctx, scheme_id, version=None, description=None):
    """Create a table; version defaults to the scheme's highest version + 1"""
    scheme = get_scheme(ctx, scheme_id)
    if version is None:
        version = (db.session.query(func.max(TransmutationTable.version))
                   .filter(TransmutationTable.scheme_id == scheme.id).scalar() or 0) + 1

    table = TransmutationTable(
        organization_id=ctx.organization_id,
        scheme_id=scheme.id,
        version=version,
        description=description,
        created_by=ctx.actor_id,
    )
    db.session.add(table)
    db.session.flush()
    record_audit(ctx, 'create', 'gradebook_transmutation_table', table.id, after=snapshot(table))
    db.session.commit()
    return table


def publish_transmutation_table(ctx, table_id):
    table = get_transmutation_table(ctx, table_id)
    before = snapshot(table)
    table.published_at = utcnow()
    table.updated_by = ctx.actor_id
    record_audit(ctx, 'update', 'gradebook_transmutation_table', table.id, before=before, after=snapshot(table),
                 event_data={'operation': 'publish'})
    db.session.commit()
    return table


def archive_transmutation_table(ctx, table_id):
    table = get_transmutation_table(ctx, table_id)
    before = snapshot(table)
    table.archived_at = utcnow()
    table.updated_by = ctx.actor_id
    record_audit(ctx, 'archive', 'gradebook_transmutation_table', table.id, before=before, after=snapshot(table))
    db.session.commit()


# ============================================================================
# Rows
# ============================================================================

def _active_rows_query(ctx, table_id):
    return TransmutationRow.query.filter_by(
        organization_id=ctx.organization_id, transmutation_table_id=table_id, archived_at=None
    )


def list_transmutation_rows(ctx, table_id):
    return _active_rows_query(ctx, table_id).order_by(TransmutationRow.initial_grade.asc()).all()


def active_rows_version(ctx, table_id):
    return active_version(ctx, transmutation_scope(table_id))


def load_row_version(ctx, config_version_id):
    """All rows of one configuration generation, archived or not"""
    if config_version_id is None:
        return []
    return TransmutationRow.query.filter_by(
        organization_id=ctx.organization_id, config_version_id=config_version_id
    ).order_by(TransmutationRow.initial_grade.asc()).all()


def replace_transmutation_rows(ctx, table_id, rows):
    """
    Replace all rows of a table as one batch.

    Args:
        rows: list of (initial_grade, transmuted_grade) pairs or dicts with
              those keys

    Raises:
        ConfigurationError: duplicate initial_grade values (checked before any write)
    """
    table = get_transmutation_table(ctx, table_id)

    pairs = []
    for entry in rows:
        if isinstance(entry, dict):
            entry = (entry.get('initial_grade'), entry.get('transmuted_grade'))
        try:
            pairs.append((float(entry[0]), float(entry[1])))
        except (TypeError, ValueError, IndexError):
            raise ValidationError(f"Invalid transmutation row: {entry!r}")
    if not pairs:
        raise ValidationError("A transmutation table needs at least one row")

    thresholds = [initial for initial, _ in pairs]
    duplicates = sorted({t for t in thresholds if thresholds.count(t) > 1})
    if duplicates:
        raise ConfigurationError(
            f"Duplicate initial_grade values found: {', '.join(f'{d:g}' for d in duplicates)}. "
            "Each initial_grade must be unique per table."
        )

    scope_key = transmutation_scope(table.id)
    before_count = _active_rows_query(ctx, table.id).count()
    version = start_replacement(ctx, 'transmutation', scope_key, _active_rows_query(ctx, table.id))

    created = []
    for initial, transmuted in sorted(pairs):
        row = TransmutationRow(
            organization_id=ctx.organization_id,
            transmutation_table_id=table.id,
            config_version_id=version.id,
            initial_grade=initial,
            transmuted_grade=transmuted,
            created_by=ctx.actor_id,
        )
        db.session.add(row)
        created.append(row)
    db.session.flush()

    record_audit(ctx, 'update', 'gradebook_transmutation_rows', version.id,
                 before={'row_count': before_count},
                 after={'rows': [[r.initial_grade, r.transmuted_grade] for r in created]},
                 event_data={'transmutation_table_id': table.id, 'scope_key': scope_key,
                             'version_number': version.version_number})
    commit_replacement(scope_key)

    logger.info("Transmutation table %s: %s rows (version %s)", table.id, len(created), version.version_number)
    return created
