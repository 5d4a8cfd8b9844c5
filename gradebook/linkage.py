"""
Links from computed grades to the registrar's confirmed grade entries.

A link is append-only and 1:1 in both directions.
"""

import logging

from extensions import db
from gradebook.audit import record_audit, snapshot
from gradebook.errors import LinkConflictError, NotFoundError, RunStateError, ValidationError
from models import ComputedGrade, GradeEntryLink

logger = logging.getLogger(__name__)


def get_computed_grade(ctx, computed_grade_id):
    grade = ComputedGrade.query.filter_by(
        id=computed_grade_id, organization_id=ctx.organization_id
    ).first()
    if grade is None:
        raise NotFoundError(f"Computed grade {computed_grade_id} not found")
    return grade


def link_computed_grade(ctx, computed_grade_id, grade_entry_id):
    """
    Link a computed grade to a confirmed grade entry.

    Linking the same pair again returns the existing link.

    Raises:
        NotFoundError: unknown computed grade
        RunStateError: the grade's run is not completed
        LinkConflictError: either side is already linked to something else
    """
    if not grade_entry_id:
        raise ValidationError("grade_entry_id is required")
    grade_entry_id = str(grade_entry_id)

    grade = get_computed_grade(ctx, computed_grade_id)
    if grade.compute_run.status != 'completed':
        raise RunStateError(
            f"Computed grade {grade.id} belongs to run {grade.compute_run_id} "
            f"with status {grade.compute_run.status}; only completed runs can be linked"
        )

    existing = GradeEntryLink.query.filter_by(computed_grade_id=grade.id, archived_at=None).first()
    if existing is not None:
        if existing.grade_entry_id == grade_entry_id:
            return existing
        raise LinkConflictError(
            f"Computed grade {grade.id} is already linked to grade entry {existing.grade_entry_id}"
        )

    taken = GradeEntryLink.query.filter_by(grade_entry_id=grade_entry_id, archived_at=None).first()
    if taken is not None:
        raise LinkConflictError(
            f"Grade entry {grade_entry_id} is already linked to computed grade {taken.computed_grade_id}"
        )

    link = GradeEntryLink(
        organization_id=ctx.organization_id,
        computed_grade_id=grade.id,
        grade_entry_id=grade_entry_id,
        created_by=ctx.actor_id,
    )
    db.session.add(link)
    db.session.flush()
    record_audit(ctx, 'create', 'gradebook_grade_entry_link', link.id, after=snapshot(link),
                 event_data={'compute_run_id': grade.compute_run_id, 'student_id': grade.student_id})
    db.session.commit()

    logger.info("Computed grade %s linked to grade entry %s", grade.id, grade_entry_id)
    return link


def list_grade_entry_links(ctx, computed_grade_id=None, grade_entry_id=None):
    query = GradeEntryLink.query.filter_by(organization_id=ctx.organization_id, archived_at=None)
    if computed_grade_id is not None:
        query = query.filter_by(computed_grade_id=computed_grade_id)
    if grade_entry_id is not None:
        query = query.filter_by(grade_entry_id=str(grade_entry_id))
    return query.order_by(GradeEntryLink.id.asc()).all()
