"""Shared fixtures: an app on in-memory SQLite, a staff user and data builders."""

from datetime import timedelta

import pytest
from flask_login import FlaskLoginClient

from app import create_app
from extensions import db as _db
from gradebook import schemes, scores, transmutation
from gradebook.context import RequestContext
from models import (
    GradedItem, GradedScore, GradingComponent, Section, SectionStudent, SectionSubjectOffering,
    Student, Subject, Syllabus, User, utcnow,
)

ORG_ID = 1


@pytest.fixture
def app():
    app = create_app('testing')
    app.test_client_class = FlaskLoginClient
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def staff(db):
    user = User(email='registrar@example.edu', first_name='Lorna', last_name='Reyes',
                role='registrar', organization_id=ORG_ID)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def ctx(staff):
    return RequestContext(organization_id=ORG_ID, actor_id=staff.id)


class Builder:
    """Creates engine configuration and collaborator rows for a test"""

    def __init__(self, ctx):
        self.ctx = ctx

    def scheme(self, scheme_type='k12', weight_policy=None, rounding_mode=None, publish=True, name='Test Scheme'):
        scheme = schemes.create_scheme(self.ctx, scheme_type, name,
                                       weight_policy=weight_policy, rounding_mode=rounding_mode)
        if publish:
            schemes.publish_scheme(self.ctx, scheme.id)
        return scheme

    def components(self, scheme, *codes):
        return {
            code: schemes.create_component(self.ctx, scheme.id, code, f'Component {code}', display_order=order)
            for order, code in enumerate(codes)
        }

    def profile(self, scheme, key='general', label=None, is_default=True, weights=None, components=None):
        profile = schemes.create_weight_profile(self.ctx, scheme.id, key, label or key.title(), is_default=is_default)
        if weights:
            self.weights(scheme, profile, components, weights)
        return profile

    def weights(self, scheme, profile, components, weights):
        return schemes.replace_component_weights(
            self.ctx, scheme.id, profile.id if profile else None,
            {components[code].id: value for code, value in weights.items()},
        )

    def table(self, scheme, rows, publish=True):
        table = transmutation.create_transmutation_table(self.ctx, scheme.id)
        transmutation.replace_transmutation_rows(self.ctx, table.id, rows)
        if publish:
            transmutation.publish_transmutation_table(self.ctx, table.id)
        return table

    def section(self, classification=None, program_id=None, name='Grade 7 - Rizal'):
        section = Section(organization_id=self.ctx.organization_id, name=name, program_id=program_id,
                          primary_classification=classification)
        _db.session.add(section)
        _db.session.commit()
        return section

    def offering(self, section, code='MATH7', name='Mathematics 7'):
        subject = Subject(organization_id=self.ctx.organization_id, code=code, name=name)
        _db.session.add(subject)
        _db.session.flush()
        offering = SectionSubjectOffering(organization_id=self.ctx.organization_id,
                                          section_id=section.id, subject_id=subject.id)
        _db.session.add(offering)
        _db.session.commit()
        return offering

    def syllabus(self, program_id, subject):
        _db.session.add(Syllabus(organization_id=self.ctx.organization_id, program_id=program_id, subject=subject))
        _db.session.commit()

    def student(self, section, first_name='Juan', last_name='Dela Cruz', status='active'):
        student = Student(organization_id=self.ctx.organization_id, first_name=first_name, last_name=last_name)
        _db.session.add(student)
        _db.session.flush()
        _db.session.add(SectionStudent(section_id=section.id, student_id=student.id, status=status))
        _db.session.commit()
        return student

    def item(self, section, component, max_points=10, title='Quiz', term='Q1', school_year_id=2025):
        return scores.create_graded_item(self.ctx, component.id, school_year_id, term, title, max_points,
                                         section_id=section.id)

    def score(self, item, student, points=None, status='present'):
        return scores.upsert_graded_score(self.ctx, item.id, student.id, points, status)


@pytest.fixture
def build(ctx):
    return Builder(ctx)


@pytest.fixture
def backdate(db):
    """Move every component, item and score into the past"""
    def _backdate(hours=1):
        then = utcnow() - timedelta(hours=hours)
        for model in (GradingComponent, GradedItem, GradedScore):
            model.query.update({'created_at': then}, synchronize_session=False)
        db.session.commit()
        return then
    return _backdate
