"""
models.py - Database Models for the Gradebook Computation Engine
Grading schemes, weights, transmutation tables, scores, compute runs and the
collaborator records (sections, rosters, syllabi) the engine reads.
"""

import json
from datetime import datetime, timezone

from flask_login import UserMixin

from extensions import db


SCHEME_TYPES = ('k12', 'higher-ed', 'percentage')
TRANSMUTED_SCHEME_TYPES = ('k12', 'higher-ed')
ROUNDING_MODES = ('floor', 'round', 'ceil')
WEIGHT_POLICIES = ('strict', 'normalize')
SCORE_STATUSES = ('present', 'absent', 'excused', 'missing')
RUN_STATUSES = ('created', 'completed', 'failed')


def utcnow():
    """Naive UTC timestamp (stored as-is in every DateTime column)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class TrackedMixin:
    """Organization scope and who/when columns shared by engine tables"""
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    created_by = db.Column(db.Integer, nullable=True)
    updated_by = db.Column(db.Integer, nullable=True)


# ============================================================================
# Collaborators (read by the engine, owned by other parts of the school system)
# ============================================================================

class User(UserMixin, db.Model):
    """
    Staff profile loaded by Flask-Login for each request
    """
    __tablename__ = 'user'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    role = db.Column(db.String(20), nullable=False)  # 'admin', 'registrar', 'teacher', ...
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<User {self.email} ({self.role})>'


class Student(db.Model):
    __tablename__ = 'student'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    student_number = db.Column(db.String(50), nullable=True, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)

    def __repr__(self):
        return f'<Student {self.student_number} - {self.get_full_name()}>'

    def get_full_name(self):
        """Return full name"""
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def to_dict(self):
        return {
            'id': self.id,
            'student_number': self.student_number,
            'first_name': self.first_name,
            'last_name': self.last_name,
        }


class Section(db.Model):
    """
    Class section. primary_classification selects the weight profile.
    """
    __tablename__ = 'section'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    school_id = db.Column(db.Integer, nullable=True)
    program_id = db.Column(db.Integer, nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50), nullable=True)

    # e.g. "core", "applied", "mapeh" - matches WeightProfile.profile_key
    primary_classification = db.Column(db.String(100), nullable=True)
    classification_source = db.Column(db.String(50), nullable=True)

    archived_at = db.Column(db.DateTime, nullable=True)

    roster = db.relationship('SectionStudent', backref='section', lazy='dynamic')

    def __repr__(self):
        return f'<Section {self.code or self.name}>'


class Subject(db.Model):
    __tablename__ = 'subject'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    code = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(200), nullable=False)

    def __repr__(self):
        return f'<Subject {self.code} - {self.name}>'


class SectionSubjectOffering(db.Model):
    """
    A subject taught in a section (graded items may hang off an offering)
    """
    __tablename__ = 'section_subject_offering'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False, index=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('subject.id'), nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)

    section = db.relationship('Section')
    subject = db.relationship('Subject')


class Syllabus(db.Model):
    __tablename__ = 'syllabus'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    program_id = db.Column(db.Integer, nullable=True, index=True)
    subject = db.Column(db.String(200), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    archived_at = db.Column(db.DateTime, nullable=True)


class SectionStudent(db.Model):
    """
    Roster membership. Active = status 'active' and no end date.
    """
    __tablename__ = 'section_student'

    id = db.Column(db.Integer, primary_key=True)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='active')
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    student = db.relationship('Student')


# ============================================================================
# Grading configuration
# ============================================================================

class GradingScheme(TrackedMixin, db.Model):
    """
    Grading methodology for a school/program (K-12, higher-ed, plain percentage)
    """
    __tablename__ = 'gradebook_scheme'

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, nullable=True)
    program_id = db.Column(db.Integer, nullable=True)
    scheme_type = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    published_at = db.Column(db.DateTime, nullable=True)  # null = draft

    # Null means "use the default for this scheme type"
    rounding_mode = db.Column(db.String(10), nullable=True)
    weight_policy = db.Column(db.String(10), nullable=True)

    archived_at = db.Column(db.DateTime, nullable=True)

    components = db.relationship('GradingComponent', backref='scheme', lazy='dynamic')

    def __repr__(self):
        return f'<GradingScheme {self.name} v{self.version} ({self.scheme_type})>'

    @property
    def effective_rounding_mode(self):
        if self.rounding_mode:
            return self.rounding_mode
        return 'floor' if self.scheme_type == 'k12' else 'round'

    @property
    def effective_weight_policy(self):
        return self.weight_policy or 'strict'

    @property
    def requires_transmutation(self):
        return self.scheme_type in TRANSMUTED_SCHEME_TYPES

    @property
    def is_published(self):
        return self.published_at is not None

    def bump_version(self, actor_id=None):
        """Structural changes produce a new scheme version"""
        self.version = (self.version or 1) + 1
        self.updated_by = actor_id

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'school_id': self.school_id,
            'program_id': self.program_id,
            'scheme_type': self.scheme_type,
            'name': self.name,
            'description': self.description,
            'version': self.version,
            'published_at': _iso(self.published_at),
            'rounding_mode': self.effective_rounding_mode,
            'weight_policy': self.effective_weight_policy,
            'archived_at': _iso(self.archived_at),
            'created_at': _iso(self.created_at),
        }


class GradingComponent(TrackedMixin, db.Model):
    """
    Weighted grading category (Written Work, Performance Task, ...)
    """
    __tablename__ = 'gradebook_component'
    __table_args__ = (
        db.Index(
            'uq_gradebook_component_active_code', 'scheme_id', 'code', unique=True,
            sqlite_where=db.text('archived_at IS NULL'),
            postgresql_where=db.text('archived_at IS NULL'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    scheme_id = db.Column(db.Integer, db.ForeignKey('gradebook_scheme.id'), nullable=False, index=True)
    code = db.Column(db.String(50), nullable=False)
    label = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    display_order = db.Column(db.Integer, nullable=False, default=0)
    archived_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<GradingComponent {self.code} - {self.label}>'

    def to_dict(self):
        return {
            'id': self.id,
            'scheme_id': self.scheme_id,
            'code': self.code,
            'label': self.label,
            'description': self.description,
            'display_order': self.display_order,
            'archived_at': _iso(self.archived_at),
        }


class WeightProfile(TrackedMixin, db.Model):
    """
    Alternate weighting selected by section classification
    """
    __tablename__ = 'gradebook_weight_profile'
    __table_args__ = (
        db.Index(
            'uq_gradebook_weight_profile_active_key', 'scheme_id', 'profile_key', unique=True,
            sqlite_where=db.text('archived_at IS NULL'),
            postgresql_where=db.text('archived_at IS NULL'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    scheme_id = db.Column(db.Integer, db.ForeignKey('gradebook_scheme.id'), nullable=False, index=True)
    profile_key = db.Column(db.String(100), nullable=False)
    profile_label = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    archived_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<WeightProfile {self.profile_key}{" (default)" if self.is_default else ""}>'

    def to_dict(self):
        return {
            'id': self.id,
            'scheme_id': self.scheme_id,
            'profile_key': self.profile_key,
            'profile_label': self.profile_label,
            'description': self.description,
            'is_default': self.is_default,
            'archived_at': _iso(self.archived_at),
        }


class ConfigurationVersion(TrackedMixin, db.Model):
    """
    One generation of a batch-replaced row set (component weights of a
    scheme/profile, or the rows of a transmutation table).

    scope_key identifies the row set; the unique (scope_key, version_number)
    pair makes two concurrent replacements of the same scope collide instead
    of interleaving.
    """
    __tablename__ = 'gradebook_configuration_version'
    __table_args__ = (
        db.UniqueConstraint('scope_key', 'version_number', name='uq_gradebook_config_version'),
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(20), nullable=False)  # 'weights' or 'transmutation'
    scope_key = db.Column(db.String(100), nullable=False, index=True)
    version_number = db.Column(db.Integer, nullable=False)
    superseded_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<ConfigurationVersion {self.scope_key} v{self.version_number}>'

    def to_dict(self):
        return {
            'id': self.id,
            'kind': self.kind,
            'scope_key': self.scope_key,
            'version_number': self.version_number,
            'superseded_at': _iso(self.superseded_at),
        }


class ComponentWeight(TrackedMixin, db.Model):
    __tablename__ = 'gradebook_component_weight'
    __table_args__ = (
        db.UniqueConstraint('config_version_id', 'component_id', name='uq_gradebook_weight_per_version'),
    )

    id = db.Column(db.Integer, primary_key=True)
    scheme_id = db.Column(db.Integer, db.ForeignKey('gradebook_scheme.id'), nullable=False, index=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('gradebook_weight_profile.id'), nullable=True, index=True)
    component_id = db.Column(db.Integer, db.ForeignKey('gradebook_component.id'), nullable=False)
    config_version_id = db.Column(db.Integer, db.ForeignKey('gradebook_configuration_version.id'), nullable=False)
    weight_percent = db.Column(db.Float, nullable=False)
    archived_at = db.Column(db.DateTime, nullable=True)

    component = db.relationship('GradingComponent')

    def __repr__(self):
        return f'<ComponentWeight component:{self.component_id} {self.weight_percent}%>'

    def to_dict(self):
        return {
            'id': self.id,
            'scheme_id': self.scheme_id,
            'profile_id': self.profile_id,
            'component_id': self.component_id,
            'config_version_id': self.config_version_id,
            'weight_percent': self.weight_percent,
            'archived_at': _iso(self.archived_at),
        }


class TransmutationTable(TrackedMixin, db.Model):
    """
    Raw percentage -> official scale mapping, versioned per scheme
    """
    __tablename__ = 'gradebook_transmutation_table'

    id = db.Column(db.Integer, primary_key=True)
    scheme_id = db.Column(db.Integer, db.ForeignKey('gradebook_scheme.id'), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    description = db.Column(db.Text, nullable=True)
    published_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<TransmutationTable scheme:{self.scheme_id} v{self.version}>'

    def to_dict(self):
        return {
            'id': self.id,
            'scheme_id': self.scheme_id,
            'version': self.version,
            'description': self.description,
            'published_at': _iso(self.published_at),
            'archived_at': _iso(self.archived_at),
        }


class TransmutationRow(TrackedMixin, db.Model):
    __tablename__ = 'gradebook_transmutation_row'
    __table_args__ = (
        db.UniqueConstraint('config_version_id', 'initial_grade', name='uq_gradebook_transmutation_threshold'),
    )

    id = db.Column(db.Integer, primary_key=True)
    transmutation_table_id = db.Column(
        db.Integer, db.ForeignKey('gradebook_transmutation_table.id'), nullable=False, index=True
    )
    config_version_id = db.Column(db.Integer, db.ForeignKey('gradebook_configuration_version.id'), nullable=False)
    initial_grade = db.Column(db.Float, nullable=False)  # lower threshold
    transmuted_grade = db.Column(db.Float, nullable=False)
    archived_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<TransmutationRow {self.initial_grade} -> {self.transmuted_grade}>'

    def to_dict(self):
        return {
            'id': self.id,
            'transmutation_table_id': self.transmutation_table_id,
            'config_version_id': self.config_version_id,
            'initial_grade': self.initial_grade,
            'transmuted_grade': self.transmuted_grade,
        }


# ============================================================================
# Graded items and scores
# ============================================================================

class GradedItem(TrackedMixin, db.Model):
    """
    Quiz/task/exam anchoring scores for one section (or offering) and term
    """
    __tablename__ = 'gradebook_graded_item'

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, nullable=True)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False, index=True)
    section_subject_offering_id = db.Column(
        db.Integer, db.ForeignKey('section_subject_offering.id'), nullable=True, index=True
    )
    school_year_id = db.Column(db.Integer, nullable=False)
    term_period = db.Column(db.String(20), nullable=False)
    component_id = db.Column(db.Integer, db.ForeignKey('gradebook_component.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    max_points = db.Column(db.Float, nullable=False)
    due_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)

    component = db.relationship('GradingComponent')

    def __repr__(self):
        return f'<GradedItem {self.title} ({self.max_points} pts)>'

    def to_dict(self):
        return {
            'id': self.id,
            'section_id': self.section_id,
            'section_subject_offering_id': self.section_subject_offering_id,
            'school_year_id': self.school_year_id,
            'term_period': self.term_period,
            'component_id': self.component_id,
            'title': self.title,
            'description': self.description,
            'max_points': self.max_points,
            'due_at': _iso(self.due_at),
            'archived_at': _iso(self.archived_at),
        }


class GradedScore(TrackedMixin, db.Model):
    """
    A student's score on a graded item.

    Edits never update a row in place: the previous row is archived and a new
    one inserted, so every score has a (created_at, archived_at) validity window.
    """
    __tablename__ = 'gradebook_graded_score'
    __table_args__ = (
        db.Index(
            'uq_gradebook_score_active', 'graded_item_id', 'student_id', unique=True,
            sqlite_where=db.text('archived_at IS NULL'),
            postgresql_where=db.text('archived_at IS NULL'),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    graded_item_id = db.Column(db.Integer, db.ForeignKey('gradebook_graded_item.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    points_earned = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(10), nullable=False, default='present')
    entered_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    entered_by = db.Column(db.Integer, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)

    student = db.relationship('Student')

    def __repr__(self):
        return f'<GradedScore item:{self.graded_item_id} student:{self.student_id} {self.status}>'

    def to_dict(self):
        return {
            'id': self.id,
            'graded_item_id': self.graded_item_id,
            'student_id': self.student_id,
            'points_earned': self.points_earned,
            'status': self.status,
            'entered_at': _iso(self.entered_at),
            'entered_by': self.entered_by,
            'created_at': _iso(self.created_at),
        }


# ============================================================================
# Compute runs and their output
# ============================================================================

class ComputeRun(TrackedMixin, db.Model):
    """
    One point-in-time computation request for a section/term.
    Configuration references are frozen at creation.
    """
    __tablename__ = 'gradebook_compute_run'

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, nullable=True)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False, index=True)
    section_subject_offering_id = db.Column(
        db.Integer, db.ForeignKey('section_subject_offering.id'), nullable=True
    )
    school_year_id = db.Column(db.Integer, nullable=False)
    term_period = db.Column(db.String(20), nullable=False)

    scheme_id = db.Column(db.Integer, db.ForeignKey('gradebook_scheme.id'), nullable=False)
    scheme_version = db.Column(db.Integer, nullable=False)
    weight_profile_id = db.Column(db.Integer, db.ForeignKey('gradebook_weight_profile.id'), nullable=True)
    weight_config_version_id = db.Column(
        db.Integer, db.ForeignKey('gradebook_configuration_version.id'), nullable=True
    )
    transmutation_table_id = db.Column(
        db.Integer, db.ForeignKey('gradebook_transmutation_table.id'), nullable=True
    )
    transmutation_version = db.Column(db.Integer, nullable=True)
    transmutation_config_version_id = db.Column(
        db.Integer, db.ForeignKey('gradebook_configuration_version.id'), nullable=True
    )

    # Provenance of the weight profile choice
    classification_used = db.Column(db.String(100), nullable=True)
    classification_source = db.Column(db.String(50), nullable=True)
    classification_is_fallback = db.Column(db.Boolean, nullable=False, default=False)

    as_of = db.Column(db.DateTime, nullable=False)
    run_by = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(10), nullable=False, default='created')
    error_message = db.Column(db.Text, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    scheme = db.relationship('GradingScheme')
    section = db.relationship('Section')
    grades = db.relationship('ComputedGrade', backref='compute_run', lazy='dynamic')

    def __repr__(self):
        return f'<ComputeRun {self.id} section:{self.section_id} {self.term_period} ({self.status})>'

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'section_id': self.section_id,
            'section_subject_offering_id': self.section_subject_offering_id,
            'school_year_id': self.school_year_id,
            'term_period': self.term_period,
            'scheme_id': self.scheme_id,
            'scheme_version': self.scheme_version,
            'weight_profile_id': self.weight_profile_id,
            'weight_config_version_id': self.weight_config_version_id,
            'transmutation_table_id': self.transmutation_table_id,
            'transmutation_version': self.transmutation_version,
            'transmutation_config_version_id': self.transmutation_config_version_id,
            'classification_used': self.classification_used,
            'classification_source': self.classification_source,
            'classification_is_fallback': self.classification_is_fallback,
            'as_of': _iso(self.as_of),
            'run_by': self.run_by,
            'status': self.status,
            'error_message': self.error_message,
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at),
        }


class ComputedGrade(db.Model):
    """
    Per-(run, student) result. Not official until linked to a grade entry.
    """
    __tablename__ = 'gradebook_computed_grade'
    __table_args__ = (
        db.UniqueConstraint('compute_run_id', 'student_id', name='uq_gradebook_computed_grade'),
    )

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    compute_run_id = db.Column(db.Integer, db.ForeignKey('gradebook_compute_run.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('section.id'), nullable=False)
    section_subject_offering_id = db.Column(db.Integer, nullable=True)
    school_year_id = db.Column(db.Integer, nullable=False)
    term_period = db.Column(db.String(20), nullable=False)

    initial_grade = db.Column(db.Float, nullable=True)  # raw weighted percentage
    final_numeric_grade = db.Column(db.Float, nullable=False)
    transmuted_grade = db.Column(db.Float, nullable=True)
    output_grade_value = db.Column(db.String(20), nullable=True)

    # Breakdown (JSON format, see gradebook.breakdown.Breakdown)
    breakdown = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    student = db.relationship('Student')

    def __repr__(self):
        return f'<ComputedGrade run:{self.compute_run_id} student:{self.student_id} {self.final_numeric_grade}>'

    def get_breakdown(self):
        """Parse and return the breakdown record"""
        from gradebook.breakdown import Breakdown
        return Breakdown.from_dict(json.loads(self.breakdown))

    def set_breakdown(self, breakdown):
        """Store a Breakdown record"""
        self.breakdown = json.dumps(breakdown.to_dict())

    def to_dict(self):
        return {
            'id': self.id,
            'compute_run_id': self.compute_run_id,
            'student_id': self.student_id,
            'student': self.student.to_dict() if self.student else None,
            'section_id': self.section_id,
            'section_subject_offering_id': self.section_subject_offering_id,
            'school_year_id': self.school_year_id,
            'term_period': self.term_period,
            'initial_grade': self.initial_grade,
            'final_numeric_grade': self.final_numeric_grade,
            'transmuted_grade': self.transmuted_grade,
            'output_grade_value': self.output_grade_value,
            'breakdown': json.loads(self.breakdown),
            'created_at': _iso(self.created_at),
        }


class GradeEntryLink(TrackedMixin, db.Model):
    """
    Append-only 1:1 link from a computed grade to the confirmed grade entry
    recorded by the registrar
    """
    __tablename__ = 'gradebook_grade_entry_link'

    id = db.Column(db.Integer, primary_key=True)
    computed_grade_id = db.Column(
        db.Integer, db.ForeignKey('gradebook_computed_grade.id'), nullable=False, unique=True
    )
    grade_entry_id = db.Column(db.String(64), nullable=False, unique=True)
    archived_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<GradeEntryLink computed:{self.computed_grade_id} -> entry:{self.grade_entry_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'organization_id': self.organization_id,
            'computed_grade_id': self.computed_grade_id,
            'grade_entry_id': self.grade_entry_id,
            'created_at': _iso(self.created_at),
            'created_by': self.created_by,
        }


class AuditEvent(db.Model):
    __tablename__ = 'audit_event'

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, nullable=False, index=True)
    school_id = db.Column(db.Integer, nullable=True)
    event_type = db.Column(db.String(100), nullable=False, index=True)  # "<entity>_<action>"
    event_category = db.Column(db.String(100), nullable=False)
    actor_id = db.Column(db.Integer, nullable=True)
    target_entity_type = db.Column(db.String(100), nullable=False)
    target_entity_id = db.Column(db.String(64), nullable=True)
    event_data = db.Column(db.Text, nullable=True)  # JSON: action, before, after, extras
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f'<AuditEvent {self.event_type} {self.target_entity_type}:{self.target_entity_id}>'

    def get_event_data(self):
        if self.event_data:
            return json.loads(self.event_data)
        return {}
