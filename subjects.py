from flask import Blueprint, g, jsonify

from app_models import db, Direction, Grade, Subject, User
from auth import permission_required, protect, teacher_required
from data_isolation_helpers import get_json_body, get_school_filtered_query, get_school_record_or_404, parse_id, \
    require_school_id
from errors import ApiError
from forms import SubjectForm, validate_form
from school_permissions import require_feature

subjects_bp = Blueprint('subjects', __name__, url_prefix='/api/subjects')

can_manage_subjects = permission_required('canManageSubjects', message='Not authorized to manage subjects')


def _id_list(body, key):
    values = body.get(key)
    if values is None:
        return None
    if not isinstance(values, list):
        raise ApiError(f"{key} must be a list", 400)
    return list(dict.fromkeys(parse_id(v, key) for v in values))


def _resolve_teachers(ids, school_id):
    if not ids:
        return []
    teachers = User.query.filter(User.id.in_(ids), User.school_id == school_id,
                                 User.role.in_(('teacher', 'admin'))).all()
    if len(teachers) != len(ids):
        raise ApiError('One or more teachers were not found in this school', 400)
    return teachers


def _resolve_directions(ids, school_id):
    if not ids:
        return []
    directions = Direction.query.filter(Direction.id.in_(ids), Direction.school_id == school_id).all()
    if len(directions) != len(ids):
        raise ApiError('One or more directions were not found in this school', 400)
    return directions


def _name_taken(name, school_id, exclude_id=None):
    query = Subject.query.filter_by(name=name, school_id=school_id)
    if exclude_id:
        query = query.filter(Subject.id != exclude_id)
    return query.first() is not None


@subjects_bp.route('')
@protect
@require_feature('enableSubjects')
def list_subjects():
    subjects = get_school_filtered_query(Subject).order_by(Subject.name).all()
    return jsonify([s.to_dict() for s in subjects])


@subjects_bp.route('/teacher')
@protect
@require_feature('enableSubjects')
@teacher_required
def teacher_subjects():
    """Subjects taught by the caller"""
    subjects = (get_school_filtered_query(Subject)
                .filter(Subject.teachers.any(User.id == g.user.id))
                .order_by(Subject.name).all())
    return jsonify([s.to_dict() for s in subjects])


@subjects_bp.route('/direction/<int:direction_id>')
@protect
@require_feature('enableSubjects')
def direction_subjects(direction_id):
    direction = get_school_record_or_404(Direction, direction_id, 'Direction not found')
    subjects = sorted(direction.subjects, key=lambda s: s.name)
    return jsonify([s.to_dict() for s in subjects])


@subjects_bp.route('/<int:subject_id>')
@protect
@require_feature('enableSubjects')
def get_subject(subject_id):
    return jsonify(get_school_record_or_404(Subject, subject_id, 'Subject not found').to_dict())


@subjects_bp.route('', methods=['POST'])
@protect
@require_feature('enableSubjects')
@can_manage_subjects
def create_subject():
    form = validate_form(SubjectForm())
    body = get_json_body()
    school_id = require_school_id()
    if _name_taken(form.name.data, school_id):
        raise ApiError('Subject already exists', 400)

    teachers = _resolve_teachers(_id_list(body, 'teachers'), school_id)
    directions = _resolve_directions(_id_list(body, 'directions'), school_id)
    subject = Subject(name=form.name.data, description=form.description.data or '', school_id=school_id,
                      teachers=teachers, directions=directions)
    db.session.add(subject)
    db.session.commit()
    return jsonify(subject.to_dict()), 201


@subjects_bp.route('/<int:subject_id>', methods=['PUT'])
@protect
@require_feature('enableSubjects')
@can_manage_subjects
def update_subject(subject_id):
    subject = get_school_record_or_404(Subject, subject_id, 'Subject not found')
    form = validate_form(SubjectForm(obj=subject))
    body = get_json_body()

    if form.name.data != subject.name:
        if _name_taken(form.name.data, subject.school_id, exclude_id=subject.id):
            raise ApiError('Subject already exists', 400)
        subject.name = form.name.data
    subject.description = form.description.data or ''

    teacher_ids = _id_list(body, 'teachers')
    if teacher_ids is not None:
        subject.teachers = _resolve_teachers(teacher_ids, subject.school_id)
    direction_ids = _id_list(body, 'directions')
    if direction_ids is not None:
        subject.directions = _resolve_directions(direction_ids, subject.school_id)

    db.session.commit()
    return jsonify(subject.to_dict())


@subjects_bp.route('/<int:subject_id>', methods=['DELETE'])
@protect
@require_feature('enableSubjects')
@can_manage_subjects
def delete_subject(subject_id):
    subject = get_school_record_or_404(Subject, subject_id, 'Subject not found')
    Grade.query.filter_by(subject_id=subject.id).delete()
    db.session.delete(subject)
    db.session.commit()
    return jsonify({'message': 'Subject removed', 'id': subject_id})
