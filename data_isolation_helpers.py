"""
Data isolation helpers for multi-tenancy.

Every tenant-owned table carries ``school_id``. Views go through these
helpers so a request only ever touches rows of the school resolved by
``auth.protect``.
"""
from flask import g, request

from app_models import db, School
from errors import ApiError


def get_current_school_id():
    """Get current user's school ID from the request context"""
    return g.get('school_id')


def get_current_user():
    return g.get('user')


def is_superadmin():
    user = get_current_user()
    return bool(user and user.role == 'superadmin')


def require_school_id():
    """School ID for tenant-scoped operations; superadmins must pick a school"""
    school_id = get_current_school_id()
    if not school_id:
        raise ApiError('School context required - pass school_id for system-wide accounts', 400)
    return school_id


def get_school_filtered_query(model_class):
    """Get a query filtered by current school"""
    return model_class.query.filter_by(school_id=require_school_id())


def ensure_school_access(record):
    """Ensure the record belongs to the current school, 404 otherwise"""
    if record is None:
        return False
    school_id = get_current_school_id()
    if school_id is None:
        return is_superadmin()
    return getattr(record, 'school_id', None) == school_id


def get_school_record_or_404(model_class, record_id, message=None):
    record = db.session.get(model_class, record_id)
    if not ensure_school_access(record):
        raise ApiError(message or f"{model_class.__name__} not found", 404)
    return record


def visible_school_ids(school_id):
    """The school a user belongs to plus its branches"""
    if school_id is None:
        return None
    branch_ids = [s.id for s in School.query.filter_by(parent_cluster_id=school_id).all()]
    return [school_id] + branch_ids


def get_json_body():
    """Request JSON as a dict, empty when there is no body"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ApiError('Request body must be a JSON object', 400)
    return data


def parse_id(value, field='id'):
    """Record id from a JSON value, accepting numeric strings and {id: ...} objects"""
    if isinstance(value, dict):
        value = value.get('id')
    if isinstance(value, bool) or value in (None, ''):
        raise ApiError(f"Invalid {field}", 400)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ApiError(f"Invalid {field}", 400)
