from flask import Blueprint, jsonify

from app_models import db, Direction, User
from auth import admin_required, permission_required, protect
from data_isolation_helpers import get_school_filtered_query, get_school_record_or_404, require_school_id
from errors import ApiError
from forms import DirectionForm, validate_form
from school_permissions import require_feature

directions_bp = Blueprint('directions', __name__, url_prefix='/api/directions')

can_manage_directions = permission_required('canManageDirections', message='Not authorized to manage directions')


def _name_taken(name, school_id, exclude_id=None):
    query = Direction.query.filter_by(name=name, school_id=school_id)
    if exclude_id:
        query = query.filter(Direction.id != exclude_id)
    return query.first() is not None


@directions_bp.route('')
@protect
def list_directions():
    directions = get_school_filtered_query(Direction).order_by(Direction.name).all()
    return jsonify([d.to_dict() for d in directions])


@directions_bp.route('/<int:direction_id>')
@protect
def get_direction(direction_id):
    return jsonify(get_school_record_or_404(Direction, direction_id, 'Direction not found').to_dict())


@directions_bp.route('', methods=['POST'])
@protect
@require_feature('enableDirections')
@can_manage_directions
def create_direction():
    form = validate_form(DirectionForm())
    school_id = require_school_id()
    if _name_taken(form.name.data, school_id):
        raise ApiError('Direction already exists', 400)
    direction = Direction(name=form.name.data, description=form.description.data or '', school_id=school_id)
    db.session.add(direction)
    db.session.commit()
    return jsonify(direction.to_dict()), 201


@directions_bp.route('/<int:direction_id>', methods=['PUT'])
@protect
@require_feature('enableDirections')
@can_manage_directions
def update_direction(direction_id):
    direction = get_school_record_or_404(Direction, direction_id, 'Direction not found')
    form = validate_form(DirectionForm(obj=direction))
    if form.name.data != direction.name:
        if _name_taken(form.name.data, direction.school_id, exclude_id=direction.id):
            raise ApiError('Direction already exists', 400)
        direction.name = form.name.data
    direction.description = form.description.data or ''
    db.session.commit()
    return jsonify(direction.to_dict())


@directions_bp.route('/<int:direction_id>', methods=['DELETE'])
@protect
@require_feature('enableDirections')
@admin_required
def delete_direction(direction_id):
    direction = get_school_record_or_404(Direction, direction_id, 'Direction not found')
    User.query.filter_by(direction_id=direction.id).update({'direction_id': None})
    direction.subjects = []
    db.session.delete(direction)
    db.session.commit()
    return jsonify({'message': 'Direction removed', 'id': direction_id})
