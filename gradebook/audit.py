"""
Audit trail for gradebook mutations.

Events are added to the caller's session so they commit (or roll back)
together with the change they describe.
"""

import json
import logging

from extensions import db
from models import AuditEvent

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = ('create', 'update', 'archive')


def snapshot(entity):
    """Serializable before/after image of a model instance"""
    if entity is None:
        return None
    return entity.to_dict()


def record_audit(ctx, action, entity_type, entity_id, before=None, after=None, event_data=None):
    """
    Add an audit event for a create/update/archive on a gradebook entity.

    Args:
        ctx: RequestContext of the caller
        action: 'create', 'update' or 'archive'
        entity_type: e.g. 'gradebook_scheme'
        entity_id: primary key of the target
        before / after: dict snapshots (see snapshot())
        event_data: extra keys merged into the event payload
    """
    if action not in AUDIT_ACTIONS:
        raise ValueError(f"Unknown audit action: {action}")

    payload = {'action': action, 'before': before, 'after': after}
    payload.update(event_data or {})

    event = AuditEvent(
        organization_id=ctx.organization_id,
        school_id=ctx.school_id,
        event_type=f'{entity_type}_{action}',
        event_category=entity_type,
        actor_id=ctx.actor_id,
        target_entity_type=entity_type,
        target_entity_id=str(entity_id) if entity_id is not None else None,
        event_data=json.dumps(payload, default=str),
    )
    db.session.add(event)
    logger.debug("audit %s %s:%s by %s", event.event_type, entity_type, entity_id, ctx.actor_id)
    return event


def list_audit_events(ctx, entity_type=None, entity_id=None):
    query = AuditEvent.query.filter_by(organization_id=ctx.organization_id)
    if entity_type:
        query = query.filter_by(target_entity_type=entity_type)
    if entity_id is not None:
        query = query.filter_by(target_entity_id=str(entity_id))
    return query.order_by(AuditEvent.id.asc()).all()
