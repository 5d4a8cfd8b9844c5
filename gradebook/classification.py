"""
Weight profile resolution from a section's classification.

Resolution order (first hit wins):
1. canonical          - section.primary_classification equals a profile_key
2. syllabus_fallback  - only when the section has no classification: the most
                        common syllabus subject of the section's program is
                        matched (case-insensitive substring) against profile keys
3. default_fallback   - the scheme's is_default profile
4. ConfigurationError - nothing usable; the operator must set a classification
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import func

from gradebook.errors import ConfigurationError, NotFoundError
from models import Section, Syllabus, WeightProfile

logger = logging.getLogger(__name__)

SOURCE_CANONICAL = 'canonical'
SOURCE_SYLLABUS = 'syllabus_fallback'
SOURCE_DEFAULT = 'default_fallback'
SOURCE_EXPLICIT = 'explicit'


@dataclass(frozen=True)
class ProfileResolution:
    profile_id: Optional[int]
    classification_used: Optional[str]
    classification_source: Optional[str]
    is_fallback: bool

    def to_dict(self):
        return asdict(self)


def _active_profiles(ctx, scheme_id):
    return WeightProfile.query.filter_by(
        organization_id=ctx.organization_id, scheme_id=scheme_id, archived_at=None
    )


def representative_subject(subjects):
    """Most frequent normalized subject; ties go to the one seen first"""
    normalized = [s.strip().lower() for s in subjects if s and s.strip()]
    if not normalized:
        return None
    counts = Counter(normalized)
    best = max(counts.values())
    return next(s for s in normalized if counts[s] == best)


def _syllabus_subject(section):
    if section.program_id is None:
        return None
    limit = current_app.config.get('GRADEBOOK_SYLLABUS_SAMPLE_LIMIT', 10)
    syllabi = Syllabus.query.filter(
        Syllabus.program_id == section.program_id,
        Syllabus.organization_id == section.organization_id,
        Syllabus.subject.isnot(None),
        Syllabus.archived_at.is_(None),
    ).order_by(Syllabus.id.asc()).limit(limit).all()
    return representative_subject(s.subject for s in syllabi)


def resolve_weight_profile(ctx, section_id, scheme_id):
    """
    Pick the weight profile a section's grades should use.

    Returns:
        ProfileResolution with provenance of the choice

    Raises:
        NotFoundError: the section does not exist in this organization
        ConfigurationError: no classification, syllabus match or default profile
    """
    section = Section.query.filter_by(
        id=section_id, organization_id=ctx.organization_id, archived_at=None
    ).first()
    if section is None:
        raise NotFoundError(f"Section {section_id} not found")

    if section.primary_classification:
        profile = _active_profiles(ctx, scheme_id).filter_by(profile_key=section.primary_classification).first()
        if profile is not None:
            return ProfileResolution(
                profile_id=profile.id,
                classification_used=section.primary_classification,
                classification_source=section.classification_source or SOURCE_CANONICAL,
                is_fallback=False,
            )
        logger.warning(
            "Section %s classification %r has no profile in scheme %s",
            section.id, section.primary_classification, scheme_id,
        )
    else:
        subject = _syllabus_subject(section)
        if subject:
            profile = _active_profiles(ctx, scheme_id).filter(
                func.lower(WeightProfile.profile_key).contains(subject, autoescape=True)
            ).order_by(WeightProfile.profile_key.asc()).first()
            if profile is not None:
                logger.warning(
                    "Section %s has no classification; inferred %r from syllabus subject %r",
                    section.id, profile.profile_key, subject,
                )
                return ProfileResolution(
                    profile_id=profile.id,
                    classification_used=profile.profile_key,
                    classification_source=SOURCE_SYLLABUS,
                    is_fallback=True,
                )

    default = _active_profiles(ctx, scheme_id).filter_by(is_default=True).first()
    if default is not None:
        logger.warning("Section %s falls back to default profile %r", section.id, default.profile_key)
        return ProfileResolution(
            profile_id=default.id,
            classification_used=default.profile_key,
            classification_source=SOURCE_DEFAULT,
            is_fallback=True,
        )

    raise ConfigurationError(
        "Missing primary classification for section; set it before computing. "
        "No default profile available."
    )
