import math
from datetime import datetime

from flask import Blueprint, g, jsonify, request
from sqlalchemy import or_

from app_models import db, Grade, Subject, User
from auth import can_manage_students, protect
from data_isolation_helpers import require_school_id
from errors import ApiError
from school_permissions import require_feature

student_stats_bp = Blueprint('student_stats', __name__, url_prefix='/api/stats')


def round2(value):
    """Round half up to two decimals"""
    return math.floor(value * 100 + 0.5) / 100


def shared_student_ids(teacher, school_id):
    """Students a teacher shares: same direction as a taught subject, or graded by them"""
    direction_ids = set()
    subjects = Subject.query.filter(Subject.school_id == school_id,
                                    Subject.teachers.any(User.id == teacher.id)).all()
    for subject in subjects:
        direction_ids.update(d.id for d in subject.directions)

    ids = set()
    if direction_ids:
        ids.update(row.id for row in User.query.filter(User.school_id == school_id, User.role == 'student',
                                                       User.direction_id.in_(direction_ids)).all())
    graded = db.session.query(Grade.student_id).filter(Grade.school_id == school_id,
                                                      Grade.teacher_id == teacher.id).distinct()
    ids.update(row.student_id for row in graded)
    return ids


def _summary(grades):
    values = [grade.value for grade in grades]
    count = len(values)
    subject_stats = {}
    for grade in grades:
        name = grade.subject.name if grade.subject else 'Unknown Subject'
        stats = subject_stats.setdefault(name, {'count': 0, 'total': 0, 'average': 0})
        stats['count'] += 1
        stats['total'] += grade.value
    for stats in subject_stats.values():
        stats['average'] = round2(stats['total'] / stats['count'])
    return {
        'gradeCount': count,
        'averageGrade': round2(sum(values) / count) if count else 0,
        'highestGrade': max(values) if count else 0,
        'lowestGrade': min(values) if count else 0,
        'subjectStats': subject_stats,
    }


def _month_keys(now, months=12):
    keys = []
    year, month = now.year, now.month
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def _ensure_can_view(student, school_id):
    if g.user.role == 'teacher' and student.id not in shared_student_ids(g.user, school_id):
        raise ApiError('Not authorized to view statistics for this student', 403)


@student_stats_bp.route('/students')
@protect
@require_feature('enableAnalytics')
@can_manage_students
def students_with_stats():
    """Students with their grade summary"""
    school_id = require_school_id()
    query = User.query.filter(User.school_id == school_id, User.role == 'student')

    if g.user.role == 'teacher':
        ids = shared_student_ids(g.user, school_id)
        if not ids:
            return jsonify({'students': [], 'total': 0, 'searchTerm': request.args.get('search', '')})
        query = query.filter(User.id.in_(ids))
    elif g.user.role not in ('admin', 'secretary', 'superadmin'):
        raise ApiError('Not authorized to view student statistics', 403)

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    students = query.order_by(User.name).all()
    grades_by_student = {}
    if students:
        grades = Grade.query.filter(Grade.school_id == school_id,
                                    Grade.student_id.in_([s.id for s in students])).all()
        for grade in grades:
            grades_by_student.setdefault(grade.student_id, []).append(grade)

    data = [{'student': s.to_summary(), 'statistics': _summary(grades_by_student.get(s.id, []))} for s in students]
    return jsonify({'students': data, 'total': len(data), 'searchTerm': search})


@student_stats_bp.route('/students/<int:student_id>')
@protect
@require_feature('enableAnalytics')
@can_manage_students
def student_detail(student_id):
    """Detailed progress for one student"""
    school_id = require_school_id()
    student = db.session.get(User, student_id)
    if not student or student.school_id != school_id or student.role != 'student':
        raise ApiError('Student not found', 404)
    _ensure_can_view(student, school_id)

    grades = (Grade.query.filter_by(student_id=student.id, school_id=school_id)
              .order_by(Grade.date.desc()).all())
    summary = _summary(grades)

    monthly = {key: {'count': 0, 'total': 0, 'average': 0} for key in _month_keys(datetime.utcnow())}
    for grade in grades:
        key = f"{grade.date.year:04d}-{grade.date.month:02d}"
        if key in monthly:
            monthly[key]['count'] += 1
            monthly[key]['total'] += grade.value
    for stats in monthly.values():
        if stats['count']:
            stats['average'] = round2(stats['total'] / stats['count'])

    breakdown = {}
    for grade in grades:
        name = grade.subject.name if grade.subject else 'Unknown Subject'
        stats = breakdown.setdefault(name, {'count': 0, 'total': 0, 'average': 0,
                                            'highest': 0, 'lowest': 100, 'grades': []})
        stats['count'] += 1
        stats['total'] += grade.value
        stats['highest'] = max(stats['highest'], grade.value)
        stats['lowest'] = min(stats['lowest'], grade.value)
        # grades are already newest first
        stats['grades'].append({
            'value': grade.value,
            'date': grade.to_dict()['date'],
            'teacher': grade.teacher.name if grade.teacher else 'Unknown Teacher',
            'description': grade.description or '',
        })
    for stats in breakdown.values():
        stats['average'] = round2(stats['total'] / stats['count'])

    return jsonify({
        'student': student.to_dict(),
        'overview': {
            'gradeCount': summary['gradeCount'],
            'averageGrade': summary['averageGrade'],
            'highestGrade': summary['highestGrade'],
            'lowestGrade': summary['lowestGrade'],
        },
        'monthlyProgress': monthly,
        'subjectBreakdown': breakdown,
        'recentGrades': [grade.to_dict() for grade in grades[:10]],
    })
