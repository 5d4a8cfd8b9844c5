"""
create_test_data.py - Populate Database with Test Data
Run this script to create a sample DepEd K-12 grading scheme, a section with
a roster and scores, and one computed run for testing the API.

Usage: python create_test_data.py
"""

import random

from app import create_app
from extensions import db
from gradebook import compute, schemes, scores, transmutation
from gradebook.context import RequestContext
from models import Section, SectionStudent, SectionSubjectOffering, Student, Subject, Syllabus, User

ORGANIZATION_ID = 1
SCHOOL_YEAR_ID = 2025
TERM = 'Q1'

# DepEd Order No. 8, s. 2015 (initial grade lower bound -> transmuted grade)
DEPED_TRANSMUTATION = [
    (100.00, 100), (98.40, 99), (96.80, 98), (95.20, 97), (93.60, 96), (92.00, 95),
    (90.40, 94), (88.80, 93), (87.20, 92), (85.60, 91), (84.00, 90), (82.40, 89),
    (80.80, 88), (79.20, 87), (77.60, 86), (76.00, 85), (74.40, 84), (72.80, 83),
    (71.20, 82), (69.60, 81), (68.00, 80), (66.40, 79), (64.80, 78), (63.20, 77),
    (61.60, 76), (60.00, 75), (56.00, 74), (52.00, 73), (48.00, 72), (44.00, 71),
    (40.00, 70), (36.00, 69), (32.00, 68), (28.00, 67), (24.00, 66), (20.00, 65),
    (16.00, 64), (12.00, 63), (8.00, 62), (4.00, 61), (0.00, 60),
]

# profile key -> (label, WW, PT, QA, is_default)
DEPED_PROFILES = {
    'languages': ('Languages, AP, EsP', 30, 50, 20, True),
    'science_math': ('Science and Mathematics', 40, 40, 20, False),
    'mapeh_tle': ('MAPEH, EPP/TLE', 20, 60, 20, False),
}


def create_test_data():
    """Create sample gradebook data for the development database"""

    app = create_app('development')

    with app.app_context():
        print("🗑️  Clearing existing data...")
        db.drop_all()
        db.create_all()

        print("👤 Creating staff users...")
        registrar = User(
            email='registrar@school.edu',
            first_name='Lorna',
            last_name='Reyes',
            role='registrar',
            organization_id=ORGANIZATION_ID,
        )
        teacher = User(
            email='teacher@school.edu',
            first_name='Maria',
            last_name='Santos',
            role='teacher',
            organization_id=ORGANIZATION_ID,
        )
        db.session.add_all([registrar, teacher])
        db.session.commit()
        ctx = RequestContext(organization_id=ORGANIZATION_ID, actor_id=registrar.id, school_id=1)
        print("   ✅ Created 2 staff users")

        print("📐 Creating DepEd K-12 grading scheme...")
        scheme = schemes.create_scheme(ctx, 'k12', 'DepEd K-12 (DO 8, s. 2015)',
                                       description='Written Work / Performance Task / Quarterly Assessment')
        components = {
            code: schemes.create_component(ctx, scheme.id, code, label, display_order=order)
            for order, (code, label) in enumerate([
                ('WW', 'Written Work'),
                ('PT', 'Performance Task'),
                ('QA', 'Quarterly Assessment'),
            ])
        }

        for key, (label, ww, pt, qa, is_default) in DEPED_PROFILES.items():
            profile = schemes.create_weight_profile(ctx, scheme.id, key, label, is_default=is_default)
            schemes.replace_component_weights(ctx, scheme.id, profile.id, {
                components['WW'].id: ww,
                components['PT'].id: pt,
                components['QA'].id: qa,
            })
        print(f"   ✅ Created {len(components)} components and {len(DEPED_PROFILES)} weight profiles")

        table = transmutation.create_transmutation_table(ctx, scheme.id, description='DepEd standard table')
        transmutation.replace_transmutation_rows(ctx, table.id, DEPED_TRANSMUTATION)
        transmutation.publish_transmutation_table(ctx, table.id)
        schemes.publish_scheme(ctx, scheme.id)
        print(f"   ✅ Transmutation table v{table.version} with {len(DEPED_TRANSMUTATION)} rows")

        print("🏫 Creating section and roster...")
        subject = Subject(organization_id=ORGANIZATION_ID, code='MATH7', name='Mathematics 7')
        section = Section(
            organization_id=ORGANIZATION_ID,
            school_id=1,
            program_id=7,
            name='Grade 7 - Sampaguita',
            code='G7-SAMP',
            primary_classification='science_math',
            classification_source='canonical',
        )
        db.session.add_all([subject, section])
        db.session.flush()
        offering = SectionSubjectOffering(
            organization_id=ORGANIZATION_ID, section_id=section.id, subject_id=subject.id
        )
        db.session.add(offering)
        db.session.add(Syllabus(organization_id=ORGANIZATION_ID, program_id=7, subject='Mathematics'))

        names = [
            ('Juan', 'Dela Cruz'), ('Ana', 'Bautista'), ('Jose', 'Rizal'), ('Liza', 'Soberano'),
            ('Mark', 'Villanueva'), ('Bea', 'Alonzo'), ('Paolo', 'Garcia'), ('Kim', 'Chiu'),
        ]
        students = []
        for index, (first_name, last_name) in enumerate(names, start=1):
            student = Student(
                organization_id=ORGANIZATION_ID,
                student_number=f'2025-{index:05d}',
                first_name=first_name,
                last_name=last_name,
            )
            db.session.add(student)
            students.append(student)
        db.session.flush()
        for student in students:
            db.session.add(SectionStudent(section_id=section.id, student_id=student.id, status='active'))
        db.session.commit()
        print(f"   ✅ Created {len(students)} students in {section.name}")

        print("📝 Creating graded items and scores...")
        item_plan = [
            ('WW', 'Quiz 1', 20), ('WW', 'Quiz 2', 20), ('WW', 'Seatwork', 10),
            ('PT', 'Group Project', 50), ('PT', 'Problem Set', 30),
            ('QA', 'First Quarter Exam', 60),
        ]
        random.seed(7)
        score_count = 0
        for code, title, max_points in item_plan:
            item = scores.create_graded_item(
                ctx, components[code].id, SCHOOL_YEAR_ID, TERM, title, max_points, offering_id=offering.id,
            )
            entries = []
            for student in students:
                roll = random.random()
                if roll < 0.05:
                    entries.append({'student_id': student.id, 'status': 'excused'})
                elif roll < 0.10:
                    entries.append({'student_id': student.id, 'status': 'missing'})
                else:
                    points = round(random.uniform(0.55, 1.0) * max_points)
                    entries.append({'student_id': student.id, 'points_earned': points, 'status': 'present'})
            score_count += len(scores.bulk_upsert_graded_scores(ctx, item.id, entries))
        print(f"   ✅ Created {len(item_plan)} graded items and {score_count} scores")

        print("🧮 Computing grades...")
        outcome = compute.run_computation(ctx, SCHOOL_YEAR_ID, TERM, scheme.id, offering_id=offering.id)
        if not outcome.succeeded:
            print(f"   ❌ Compute run {outcome.run.id} failed: {outcome.error}")
        else:
            for grade in compute.list_computed_grades(ctx, outcome.run.id):
                print(f"   {grade.student.get_full_name():<20} "
                      f"initial {grade.initial_grade:6.2f} -> {grade.final_numeric_grade:g}")

        print("\n" + "=" * 60)
        print("🎉 TEST DATA CREATION COMPLETE!")
        print("=" * 60)
        print("\n📊 DATABASE SUMMARY:")
        print(f"   Scheme: {scheme.name} (v{scheme.version})")
        print(f"   Students: {len(students)}")
        print(f"   Graded items: {len(item_plan)}")
        print(f"   Compute run: {outcome.run.id} ({outcome.run.status})")
        print("\n" + "=" * 60)
        print("🚀 You can now run the Flask app and test the API!")
        print("   Run: python app.py")
        print("=" * 60 + "\n")


if __name__ == '__main__':
    create_test_data()
