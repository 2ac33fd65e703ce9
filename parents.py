"""
Parent accounts.

A parent is a regular user with the ``parent`` role linked to one or more
students of the same school. Admins create and link parents; a parent reads
the grades and notifications of their linked students.
"""
import logging

from flask import Blueprint, g, jsonify

from app_models import db, Grade, Notification, NotificationRecipient, User
from auth import admin_required, protect, roles_required
from data_isolation_helpers import get_json_body, parse_id, require_school_id
from errors import ApiError
from forms import ParentAccountForm, validate_form
from security import hash_password
from student_stats import shared_student_ids

logger = logging.getLogger(__name__)

parents_bp = Blueprint('parents', __name__, url_prefix='/api/users')

RECENT_PER_STUDENT = 5
RECENT_COMBINED = 10


def linked_student_ids(user):
    """Ids of the students a parent may read"""
    if user.role != 'parent':
        return set()
    return {child.id for child in user.children}


def _student_ids(body):
    values = body.get('studentIds')
    if not isinstance(values, list) or not values:
        raise ApiError('Student IDs array is required', 400)
    return list(dict.fromkeys(parse_id(v, 'studentIds') for v in values))


def _school_students(ids, school_id):
    students = User.query.filter(User.id.in_(ids), User.role == 'student', User.school_id == school_id).all()
    if len(students) != len(ids):
        raise ApiError('One or more students not found or not in your school', 404)
    return students


def _get_parent_or_404(parent_id, school_id):
    parent = db.session.get(User, parent_id)
    if not parent or parent.role != 'parent' or parent.school_id != school_id:
        raise ApiError('Parent not found or not in your school', 404)
    return parent


def _parent_dict(parent, students=None):
    data = parent.to_dict()
    if students is not None:
        data['linkedStudentNames'] = [s.name for s in students]
    return data


def _grade_item(grade, with_student=False):
    item = {
        'id': grade.id,
        'value': grade.value,
        'subject': grade.subject.name if grade.subject else 'Unknown Subject',
        'teacher': grade.teacher.name if grade.teacher else 'Unknown Teacher',
        'description': grade.description or '',
        'date': grade.to_dict()['date'],
    }
    if with_student:
        item['studentName'] = grade.student.name if grade.student else 'Unknown Student'
    return item


def _notification_item(notification):
    return {
        'id': notification.id,
        'title': notification.title,
        'message': notification.message,
        'sender': notification.sender_name or 'System',
        'urgent': notification.urgent,
        'createdAt': notification.to_dict()['createdAt'],
    }


def _notifications_for(student_ids, limit):
    return (Notification.query
            .filter(Notification.recipients.any(NotificationRecipient.user_id.in_(student_ids)),
                    Notification.status != 'deleted')
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit)
            .all())


@parents_bp.route('/create-parent', methods=['POST'])
@protect
@admin_required
def create_parent():
    """Create a parent account, or link an existing one to more students"""
    body = get_json_body()
    if not isinstance(body.get('studentIds'), list) or not body.get('studentIds'):
        raise ApiError('Student IDs (array), parent name, email, and password are required', 400)
    form = validate_form(ParentAccountForm())
    school_id = require_school_id()
    students = _school_students(_student_ids(body), school_id)

    existing = User.query.filter_by(email=form.parentEmail.data, school_id=school_id).first()
    if existing:
        if existing.role != 'parent':
            raise ApiError('Email already exists for a non-parent account', 400)
        new_students = [s for s in students if s not in existing.children]
        if not new_students:
            raise ApiError('Parent is already linked to all specified students', 400)
        existing.children.extend(new_students)
        db.session.commit()
        logger.info("Parent %s linked to %s more student(s)", existing.id, len(new_students))
        data = _parent_dict(existing, students)
        data['message'] = 'Parent linked to additional students'
        return jsonify(data)

    parent = User(
        name=form.parentName.data,
        email=form.parentEmail.data,
        password=hash_password(form.parentPassword.data),
        role='parent',
        school_id=school_id,
        mobile_phone=form.parentMobilePhone.data or '',
        personal_email=form.parentPersonalEmail.data or '',
        require_password_change=True,
        is_first_login=True,
    )
    parent.children = students
    db.session.add(parent)
    db.session.commit()
    logger.info("User %s created parent %s for %s student(s)", g.user.id, parent.id, len(students))
    return jsonify(_parent_dict(parent, students)), 201


@parents_bp.route('/student/<int:student_id>/parents')
@protect
@admin_required
def student_parents(student_id):
    school_id = require_school_id()
    student = db.session.get(User, student_id)
    if not student or student.role != 'student' or student.school_id != school_id:
        raise ApiError('Student not found or not in your school', 404)
    parents = sorted(student.parents, key=lambda p: p.name)
    return jsonify({
        'hasParents': bool(parents),
        'parentCount': len(parents),
        'parents': [p.to_dict() for p in parents],
    })


@parents_bp.route('/parent/students-data')
@protect
@roles_required('parent', message='Access denied. Parent role required.')
def students_data():
    """Dashboard data for every student linked to the calling parent"""
    students = [s for s in g.user.children if s.role == 'student']
    if not students:
        raise ApiError('No linked students found', 404)
    ids = [s.id for s in students]

    students_data = []
    for student in students:
        grades = (Grade.query.filter_by(student_id=student.id)
                  .order_by(Grade.date.desc(), Grade.id.desc())
                  .limit(RECENT_PER_STUDENT).all())
        students_data.append({
            'student': student.to_summary(),
            'recentGrades': [_grade_item(grade) for grade in grades],
            'recentNotifications': [_notification_item(n) for n in _notifications_for([student.id],
                                                                                       RECENT_PER_STUDENT)],
        })

    combined = (Grade.query.filter(Grade.student_id.in_(ids))
                .order_by(Grade.date.desc(), Grade.id.desc())
                .limit(RECENT_COMBINED).all())
    return jsonify({
        'studentsCount': len(students),
        'studentsData': students_data,
        'combinedRecentGrades': [_grade_item(grade, with_student=True) for grade in combined],
        'combinedRecentNotifications': [_notification_item(n) for n in _notifications_for(ids, RECENT_COMBINED)],
    })


@parents_bp.route('/parent/<int:parent_id>/students')
@protect
@admin_required
def parent_students(parent_id):
    parent = _get_parent_or_404(parent_id, require_school_id())
    return jsonify({
        'parentId': parent.id,
        'parentName': parent.name,
        'studentsCount': len(parent.children),
        'students': [s.to_summary() for s in parent.children],
    })


@parents_bp.route('/parent/<int:parent_id>/students', methods=['POST'])
@protect
@admin_required
def link_students(parent_id):
    school_id = require_school_id()
    parent = _get_parent_or_404(parent_id, school_id)
    students = _school_students(_student_ids(get_json_body()), school_id)
    new_students = [s for s in students if s not in parent.children]
    if not new_students:
        raise ApiError('Parent is already linked to this student', 400)
    parent.children.extend(new_students)
    db.session.commit()
    return jsonify({
        'message': 'Parent linked to student successfully',
        'parentId': parent.id,
        'linkedStudentIds': [s.id for s in parent.children],
    })


@parents_bp.route('/parent/<int:parent_id>/students', methods=['DELETE'])
@protect
@admin_required
def unlink_students(parent_id):
    parent = _get_parent_or_404(parent_id, require_school_id())
    ids = _student_ids(get_json_body())
    parent.children = [s for s in parent.children if s.id not in ids]
    db.session.commit()
    logger.info("Parent %s unlinked from student(s) %s", parent.id, ids)
    return jsonify({
        'message': 'Parent-student links removed successfully',
        'parentId': parent.id,
        'unlinkedStudentIds': ids,
        'remainingLinkedStudents': len(parent.children),
    })


@parents_bp.route('/teacher-students')
@protect
@roles_required('teacher', message='Access denied. Teachers only.')
def teacher_students():
    """Students sharing a direction with the caller's subjects, or graded by them"""
    school_id = require_school_id()
    ids = shared_student_ids(g.user, school_id)
    students = []
    if ids:
        students = User.query.filter(User.id.in_(ids), User.role == 'student').order_by(User.name).all()
    return jsonify([s.to_dict() for s in students])
