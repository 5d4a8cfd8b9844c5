"""
Graded items and per-student scores.

Scores are append-only: editing a score archives the active row and inserts
a replacement, which is what lets a compute run read the scores exactly as
they stood at its as_of boundary. The fields of an item that feed a grade
(max_points, component) are frozen once it has scores.
"""

import logging

from sqlalchemy import and_, or_

from extensions import db
from gradebook.audit import record_audit, snapshot
from gradebook.errors import NotFoundError, ValidationError
from gradebook.schemes import get_component
from models import SCORE_STATUSES, GradedItem, GradedScore, Section, SectionSubjectOffering, utcnow

logger = logging.getLogger(__name__)


# ============================================================================
# Graded items
# ============================================================================

def get_section(ctx, section_id):
    section = Section.query.filter_by(
        id=section_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if section is None:
        raise NotFoundError(f"Section {section_id} not found")
    return section


def get_offering(ctx, offering_id):
    offering = SectionSubjectOffering.query.filter_by(
        id=offering_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if offering is None:
        raise NotFoundError(f"Section subject offering {offering_id} not found")
    return offering


def list_graded_items(ctx, section_id=None, offering_id=None, term_period=None, component_id=None):
    """Active items of a section or offering, oldest first"""
    if section_id is None and offering_id is None:
        raise ValidationError("section_id or offering_id is required")

    query = GradedItem.query.filter_by(organization_id=ctx.organization_id, archived_at=None)
    if offering_id is not None:
        query = query.filter_by(section_subject_offering_id=offering_id)
    if section_id is not None:
        query = query.filter_by(section_id=section_id)
    if term_period:
        query = query.filter_by(term_period=term_period)
    if component_id is not None:
        query = query.filter_by(component_id=component_id)
    return query.order_by(GradedItem.created_at.asc(), GradedItem.id.asc()).all()


def get_graded_item(ctx, item_id):
    item = GradedItem.query.filter_by(
        id=item_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if item is None:
        raise NotFoundError(f"Graded item {item_id} not found")
    return item


def _validate_max_points(max_points):
    try:
        max_points = float(max_points)
    except (TypeError, ValueError):
        raise ValidationError(f"max_points must be a number; got {max_points!r}")
    if max_points <= 0:
        raise ValidationError(f"max_points must be greater than 0; got {max_points:g}")
    return max_points


def create_graded_item(ctx, component_id, school_year_id, term_period, title, max_points,
                       section_id=None, offering_id=None, description=None, due_at=None):
    """
    Create a graded item for a section, or for a subject offering (whose
    section is then used).
    """
    if offering_id is not None:
        offering = get_offering(ctx, offering_id)
        if section_id is not None and section_id != offering.section_id:
            raise ValidationError(f"Offering {offering_id} does not belong to section {section_id}")
        section_id = offering.section_id
    if section_id is None:
        raise ValidationError("section_id or offering_id is required")
    section = get_section(ctx, section_id)

    component = get_component(ctx, component_id)
    if not title:
        raise ValidationError("title is required")
    if not term_period:
        raise ValidationError("term_period is required")

    item = GradedItem(
        organization_id=ctx.organization_id,
        school_id=section.school_id or ctx.school_id,
        section_id=section.id,
        section_subject_offering_id=offering_id,
        school_year_id=school_year_id,
        term_period=term_period,
        component_id=component.id,
        title=title,
        description=description,
        max_points=_validate_max_points(max_points),
        due_at=due_at,
        created_by=ctx.actor_id,
    )
    db.session.add(item)
    db.session.flush()
    record_audit(ctx, 'create', 'gradebook_graded_item', item.id, after=snapshot(item))
    db.session.commit()
    return item


def _ensure_unscored(item, field_name):
    if GradedScore.query.filter_by(graded_item_id=item.id).count():
        raise ValidationError(
            f"Graded item {item.id} already has scores; {field_name} can no longer change. "
            "Archive the item and create a new one instead."
        )


def update_graded_item(ctx, item_id, title=None, description=None, max_points=None, due_at=None,
                       component_id=None):
    """
    Edit an item. max_points and component_id are frozen once any score
    (active or archived) exists, since runs read items as stored.
    """
    item = get_graded_item(ctx, item_id)
    if max_points is not None:
        max_points = _validate_max_points(max_points)
        if max_points != item.max_points:
            _ensure_unscored(item, 'max_points')
    if component_id is not None:
        component_id = get_component(ctx, component_id).id
        if component_id != item.component_id:
            _ensure_unscored(item, 'component_id')

    before = snapshot(item)
    if title is not None:
        item.title = title
    if description is not None:
        item.description = description
    if max_points is not None:
        item.max_points = max_points
    if due_at is not None:
        item.due_at = due_at
    if component_id is not None:
        item.component_id = component_id
    item.updated_by = ctx.actor_id

    record_audit(ctx, 'update', 'gradebook_graded_item', item.id, before=before, after=snapshot(item))
    db.session.commit()
    return item


def archive_graded_item(ctx, item_id):
    item = get_graded_item(ctx, item_id)
    before = snapshot(item)
    item.archived_at = utcnow()
    item.updated_by = ctx.actor_id
    record_audit(ctx, 'archive', 'gradebook_graded_item', item.id, before=before, after=snapshot(item))
    db.session.commit()


# ============================================================================
# Scores
# ============================================================================

def list_graded_scores(ctx, item_id):
    item = get_graded_item(ctx, item_id)
    return GradedScore.query.filter_by(
        organization_id=ctx.organization_id, graded_item_id=item.id, archived_at=None
    ).order_by(GradedScore.student_id.asc()).all()


def _validate_score(item, points_earned, status):
    if status not in SCORE_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(SCORE_STATUSES)}; got {status!r}")
    if points_earned is None:
        if status == 'present':
            raise ValidationError("points_earned is required when status is 'present'")
        return None
    try:
        points_earned = float(points_earned)
    except (TypeError, ValueError):
        raise ValidationError(f"points_earned must be a number; got {points_earned!r}")
    if not 0 <= points_earned <= item.max_points:
        raise ValidationError(
            f"points_earned must be between 0 and {item.max_points:g}; got {points_earned:g}"
        )
    return points_earned


def _write_score(ctx, item, student_id, points_earned, status):
    points_earned = _validate_score(item, points_earned, status)

    current = GradedScore.query.filter_by(
        graded_item_id=item.id, student_id=student_id, archived_at=None
    ).first()
    if current is not None and current.points_earned == points_earned and current.status == status:
        return current, False

    now = utcnow()
    before = None
    if current is not None:
        before = snapshot(current)
        current.archived_at = now
        current.updated_by = ctx.actor_id
        # release the partial unique index before the replacement goes in
        db.session.flush()

    score = GradedScore(
        organization_id=ctx.organization_id,
        graded_item_id=item.id,
        student_id=student_id,
        points_earned=points_earned,
        status=status,
        entered_at=now,
        entered_by=ctx.actor_id,
        created_at=now,
        created_by=ctx.actor_id,
    )
    db.session.add(score)
    db.session.flush()

    action = 'update' if current is not None else 'create'
    record_audit(ctx, action, 'gradebook_graded_score', score.id, before=before, after=snapshot(score),
                 event_data={'graded_item_id': item.id, 'student_id': student_id})
    return score, True


def upsert_graded_score(ctx, item_id, student_id, points_earned=None, status='present'):
    """
    Enter or change one student's score on an item.

    Returns:
        GradedScore: the active row (unchanged when the values already match)
    """
    item = get_graded_item(ctx, item_id)
    score, changed = _write_score(ctx, item, student_id, points_earned, status)
    if changed:
        db.session.commit()
    return score


def bulk_upsert_graded_scores(ctx, item_id, entries):
    """
    Enter many scores for one item in a single transaction.

    Args:
        entries: list of {'student_id', 'points_earned', 'status'} dicts

    Any invalid entry rejects the whole batch.
    """
    item = get_graded_item(ctx, item_id)
    scores = []
    try:
        for entry in entries:
            if not isinstance(entry, dict):
                raise ValidationError(f"Score entry must be an object; got {entry!r}")
            if 'student_id' not in entry:
                raise ValidationError(f"Score entry without student_id: {entry!r}")
            score, _ = _write_score(
                ctx, item, entry['student_id'], entry.get('points_earned'), entry.get('status', 'present')
            )
            scores.append(score)
    except Exception:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info("Graded item %s: %s scores entered", item.id, len(scores))
    return scores


# ============================================================================
# Point-in-time snapshot
# ============================================================================

def valid_at(model, as_of):
    return and_(
        model.created_at <= as_of,
        or_(model.archived_at.is_(None), model.archived_at > as_of),
    )


def load_snapshot(ctx, run):
    """
    Graded items and scores exactly as they stood at run.as_of.

    Returns:
        tuple: (items, scores)
    """
    query = GradedItem.query.filter(
        GradedItem.organization_id == ctx.organization_id,
        GradedItem.section_id == run.section_id,
        GradedItem.school_year_id == run.school_year_id,
        GradedItem.term_period == run.term_period,
        valid_at(GradedItem, run.as_of),
    )
    if run.section_subject_offering_id is not None:
        query = query.filter(GradedItem.section_subject_offering_id == run.section_subject_offering_id)
    items = query.order_by(GradedItem.id.asc()).all()
    if not items:
        return [], []

    scores = GradedScore.query.filter(
        GradedScore.organization_id == ctx.organization_id,
        GradedScore.graded_item_id.in_([i.id for i in items]),
        valid_at(GradedScore, run.as_of),
    ).order_by(GradedScore.id.asc()).all()
    return items, scores
