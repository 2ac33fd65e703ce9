import logging
from datetime import datetime
from functools import wraps

from flask import Blueprint, g, jsonify

from app_models import db, School, SchoolPermissions
from auth import protect, superadmin_required
from data_isolation_helpers import get_json_body
from errors import ApiError

logger = logging.getLogger(__name__)

school_permissions_bp = Blueprint('school_permissions', __name__, url_prefix='/api/school-permissions')


def school_features(school_id):
    """Feature map for a school, all enabled when there is no school"""
    if not school_id:
        return SchoolPermissions.default_features()
    return SchoolPermissions.get_for_school(school_id).merged_features()


def require_feature(key):
    """Reject requests for features the school has switched off"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = g.get('user')
            school_id = g.get('school_id')
            if user is not None and user.role != 'superadmin' and school_id:
                permissions = SchoolPermissions.query.filter_by(school_id=school_id).first()
                if permissions is not None and not permissions.is_enabled(key):
                    raise ApiError('This feature is disabled for your school', 403, {'feature': key})
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def _school_summary(school):
    return {'id': school.id, 'name': school.name, 'emailDomain': school.email_domain, 'active': school.is_active}


@school_permissions_bp.route('/current')
@protect
def current_permissions():
    """Features of the caller's school"""
    if g.user.role == 'superadmin':
        return jsonify({'success': True, 'data': {
            'features': SchoolPermissions.default_features(),
            'isSuperAdmin': True,
        }})
    if not g.school_id:
        raise ApiError('User is not associated with a school', 400)
    return jsonify({'success': True, 'data': {
        'features': school_features(g.school_id),
        'schoolId': g.school_id,
        'isSuperAdmin': False,
    }})


@school_permissions_bp.route('/features')
@protect
@superadmin_required
def available_features():
    """Feature keys and their labels"""
    return jsonify({'success': True, 'data': SchoolPermissions.get_available_features()})


@school_permissions_bp.route('/all')
@protect
@superadmin_required
def all_permissions():
    """Every school with its permissions"""
    schools = School.query.order_by(School.name).all()
    data = []
    for school in schools:
        permissions = SchoolPermissions.get_for_school(school.id)
        data.append({'school': _school_summary(school), 'permissions': permissions.to_dict()})
    return jsonify({'success': True, 'data': data, 'total': len(data)})


@school_permissions_bp.route('/fix', methods=['POST'])
@protect
@superadmin_required
def fix_permissions():
    """Create missing permission rows and fill in missing feature keys"""
    created = 0
    updated = 0
    defaults = SchoolPermissions.default_features()
    for school in School.query.all():
        permissions = SchoolPermissions.query.filter_by(school_id=school.id).first()
        if permissions is None:
            SchoolPermissions.create_default(school.id, updated_by_id=g.user.id)
            created += 1
            continue
        features = dict(permissions.features or {})
        missing = [key for key in defaults if key not in features]
        if missing:
            for key in missing:
                features[key] = True
            permissions.features = features
            permissions.version = (permissions.version or 1) + 1
            permissions.last_updated = datetime.utcnow()
            updated += 1
    db.session.commit()
    logger.info("School permissions fixed: %s created, %s updated", created, updated)
    return jsonify({
        'success': True,
        'message': 'School permissions fixed',
        'data': {'created': created, 'updated': updated},
    })


@school_permissions_bp.route('/<int:school_id>')
@protect
@superadmin_required
def get_permissions(school_id):
    """Permissions of one school"""
    school = db.session.get(School, school_id)
    if not school:
        raise ApiError('School not found', 404)
    permissions = SchoolPermissions.get_for_school(school_id)
    return jsonify({'success': True, 'data': {'school': _school_summary(school), 'permissions': permissions.to_dict()}})


@school_permissions_bp.route('/<int:school_id>', methods=['PUT'])
@protect
@superadmin_required
def update_permissions(school_id):
    """Switch features on or off for a school"""
    school = db.session.get(School, school_id)
    if not school:
        raise ApiError('School not found', 404)

    features = get_json_body().get('features')
    if not isinstance(features, dict):
        raise ApiError('Features object is required', 400)

    available = SchoolPermissions.get_available_features()
    for key, value in features.items():
        if key not in available:
            raise ApiError(f"Invalid feature: {key}", 400)
        if not isinstance(value, bool):
            raise ApiError(f"Feature {key} must be a boolean value", 400)

    permissions = SchoolPermissions.get_for_school(school_id)
    merged = permissions.merged_features()
    merged.update(features)
    permissions.features = merged
    permissions.updated_by_id = g.user.id
    permissions.version = (permissions.version or 1) + 1
    permissions.last_updated = datetime.utcnow()
    db.session.commit()

    logger.info("School permissions updated for school %s by user %s", school_id, g.user.id)
    return jsonify({
        'success': True,
        'message': 'School permissions updated successfully',
        'data': {'school': _school_summary(school), 'permissions': permissions.to_dict()},
    })
