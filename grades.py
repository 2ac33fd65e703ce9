import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, request

from app_models import db, Grade, Subject, User
from auth import can_manage_grades, protect, teacher_required
from data_isolation_helpers import get_json_body, get_school_filtered_query, get_school_record_or_404, parse_id, \
    require_school_id
from errors import ApiError
from forms import GradeForm, GradeUpdateForm, parse_datetime, validate_form
from parents import linked_student_ids
from school_permissions import require_feature

logger = logging.getLogger(__name__)

grades_bp = Blueprint('grades', __name__, url_prefix='/api/grades')


def _grade_date(raw):
    if raw in (None, ''):
        return datetime.utcnow()
    try:
        return parse_datetime(raw)
    except ValueError:
        raise ApiError('Invalid date format', 400)


def _query_date(name):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_datetime(raw)
    except ValueError:
        raise ApiError(f"Invalid {name}", 400)


def _ensure_unique(student_id, subject_id, date, school_id, exclude_id=None):
    query = Grade.query.filter_by(student_id=student_id, subject_id=subject_id, date=date, school_id=school_id)
    if exclude_id:
        query = query.filter(Grade.id != exclude_id)
    if query.first():
        raise ApiError('A grade for this student, subject and date already exists', 400)


def _ensure_grade_owner(grade):
    if g.user.role == 'teacher' and grade.teacher_id != g.user.id:
        raise ApiError('Not authorized - you can only modify grades you assigned', 403)


def _readable_student_ids(user):
    """Students a student or parent may read grades of"""
    if user.role == 'parent':
        return linked_student_ids(user)
    return {user.id}


def _grade_list(query):
    grades = query.order_by(Grade.date.desc()).all()
    return jsonify([grade.to_dict() for grade in grades])


@grades_bp.route('', methods=['POST'])
@protect
@require_feature('enableGrades')
@can_manage_grades
def create_grade():
    """Record a grade for a student"""
    body = get_json_body()
    if body.get('student') in (None, '') or body.get('subject') in (None, ''):
        raise ApiError('Please provide student, subject, and value', 400)
    form = validate_form(GradeForm())
    school_id = require_school_id()

    student = db.session.get(User, parse_id(body['student'], 'student'))
    if not student or student.school_id != school_id or student.role != 'student':
        raise ApiError('Student not found in this school', 400)
    subject = db.session.get(Subject, parse_id(body['subject'], 'subject'))
    if not subject or subject.school_id != school_id:
        raise ApiError('Subject not found in this school', 400)

    if g.user.role == 'teacher' and g.user not in subject.teachers:
        raise ApiError('You are not assigned to teach this subject', 403)

    date = _grade_date(body.get('date'))
    _ensure_unique(student.id, subject.id, date, school_id)

    grade = Grade(
        student_id=student.id,
        subject_id=subject.id,
        teacher_id=g.user.id,
        value=form.value.data,
        description=form.description.data or '',
        date=date,
        school_id=school_id,
    )
    db.session.add(grade)
    db.session.commit()
    logger.info("Grade %s recorded by %s for student %s", grade.id, g.user.id, student.id)
    return jsonify(grade.to_dict()), 201


@grades_bp.route('')
@protect
@require_feature('enableGrades')
@teacher_required
def list_grades():
    """Grades of the school with optional filters"""
    query = get_school_filtered_query(Grade)
    for arg, column in (('student', Grade.student_id), ('subject', Grade.subject_id), ('teacher', Grade.teacher_id)):
        value = request.args.get(arg)
        if value:
            query = query.filter(column == parse_id(value, arg))
    start = _query_date('startDate')
    end = _query_date('endDate')
    if start:
        query = query.filter(Grade.date >= start)
    if end:
        query = query.filter(Grade.date <= end)
    return _grade_list(query)


@grades_bp.route('/student')
@grades_bp.route('/student/<int:student_id>')
@protect
@require_feature('enableGrades')
def student_grades(student_id=None):
    """Grades of one student; students see their own, parents their linked students"""
    if student_id is None:
        student_id = g.user.id
    if g.user.role in ('student', 'parent') and student_id not in _readable_student_ids(g.user):
        raise ApiError('Not authorized to view these grades', 403)
    school_id = require_school_id()
    student = db.session.get(User, student_id)
    if not student or student.school_id != school_id:
        raise ApiError('Student not found', 404)
    return _grade_list(get_school_filtered_query(Grade).filter_by(student_id=student_id))


@grades_bp.route('/subject/<int:subject_id>')
@protect
@require_feature('enableGrades')
def subject_grades(subject_id):
    """Grades for a subject; students see their own, parents those of linked students"""
    get_school_record_or_404(Subject, subject_id, 'Subject not found')
    query = get_school_filtered_query(Grade).filter_by(subject_id=subject_id)
    if g.user.role in ('student', 'parent'):
        query = query.filter(Grade.student_id.in_(list(_readable_student_ids(g.user))))
    return _grade_list(query)


@grades_bp.route('/teacher')
@grades_bp.route('/teacher/<int:teacher_id>')
@protect
@require_feature('enableGrades')
def teacher_grades(teacher_id=None):
    """Grades assigned by a teacher; teachers only see their own"""
    if teacher_id is None:
        teacher_id = g.user.id
    if g.user.role in ('student', 'parent'):
        raise ApiError('Not authorized to view these grades', 403)
    if g.user.role == 'teacher' and g.user.id != teacher_id:
        raise ApiError('Not authorized - teachers can only view their own grades', 403)
    return _grade_list(get_school_filtered_query(Grade).filter_by(teacher_id=teacher_id))


@grades_bp.route('/<int:grade_id>')
@protect
@require_feature('enableGrades')
def get_grade(grade_id):
    grade = get_school_record_or_404(Grade, grade_id, 'Grade not found')
    if g.user.role in ('student', 'parent') and grade.student_id not in _readable_student_ids(g.user):
        raise ApiError('Not authorized to view this grade', 403)
    if g.user.role == 'teacher' and grade.teacher_id != g.user.id:
        raise ApiError('Not authorized to view this grade', 403)
    return jsonify(grade.to_dict())


@grades_bp.route('/<int:grade_id>', methods=['PUT'])
@protect
@require_feature('enableGrades')
@can_manage_grades
def update_grade(grade_id):
    grade = get_school_record_or_404(Grade, grade_id, 'Grade not found')
    _ensure_grade_owner(grade)
    form = validate_form(GradeUpdateForm())
    body = get_json_body()

    if form.value.data is not None:
        grade.value = form.value.data
    if 'description' in body:
        grade.description = form.description.data or ''
    if body.get('date') not in (None, ''):
        date = _grade_date(body['date'])
        if date != grade.date:
            _ensure_unique(grade.student_id, grade.subject_id, date, grade.school_id, exclude_id=grade.id)
            grade.date = date

    db.session.commit()
    return jsonify(grade.to_dict())


@grades_bp.route('/<int:grade_id>', methods=['DELETE'])
@protect
@require_feature('enableGrades')
@can_manage_grades
def delete_grade(grade_id):
    grade = get_school_record_or_404(Grade, grade_id, 'Grade not found')
    _ensure_grade_owner(grade)
    db.session.delete(grade)
    db.session.commit()
    logger.info("Grade %s deleted by %s", grade_id, g.user.id)
    return jsonify({'message': 'Grade removed', 'id': grade_id})
