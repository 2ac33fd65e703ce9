"""
Bearer-token authentication and role guards.

``protect`` resolves the calling user and their tenant into ``flask.g``:
``g.user``, ``g.school_id`` and ``g.school``. The role decorators expect
to run after it.
"""
import logging
from functools import wraps

from flask import current_app, g, request

from app_models import db, School, User
from errors import ApiError
from security import TokenError, decode_token

logger = logging.getLogger(__name__)


def _bearer_token():
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        raise ApiError('Not authorized, no token provided', 401)
    token = header[len('Bearer '):].strip()
    if not token or token in ('null', 'undefined'):
        raise ApiError('Invalid token format', 401)
    return token


def _superadmin_school_context():
    """Superadmins work system-wide unless they name a school"""
    raw = request.args.get('school_id') or request.headers.get('X-School-Id')
    if not raw:
        return None, None
    try:
        school_id = int(raw)
    except (TypeError, ValueError):
        raise ApiError('Invalid school_id', 400)
    school = db.session.get(School, school_id)
    if not school:
        raise ApiError('School not found', 404)
    return school_id, school


def _resolve_school_id(user, claims):
    school_id = claims.get('schoolId') or user.school_id
    if school_id:
        return school_id

    # Fall back to the school owning the user's e-mail domain
    domain = user.email.split('@')[-1].lower() if user.email and '@' in user.email else None
    if domain:
        school = School.query.filter_by(email_domain=domain).first()
        if school:
            user.school_id = school.id
            db.session.commit()
            logger.info("Linked user %s to school %s by e-mail domain", user.id, school.id)
            return school.id
    return None


def authenticate():
    """Populate g.user / g.school_id / g.school from the bearer token"""
    token = _bearer_token()

    if not current_app.config.get('JWT_SECRET'):
        logger.error("JWT_SECRET is not configured")
        raise ApiError('Server configuration error - contact administrator', 500)

    try:
        claims = decode_token(token)
    except TokenError as e:
        raise ApiError(e.message, 401)

    if claims.get('type') == 'refresh':
        raise ApiError('Invalid token - please log in again', 401)

    user = db.session.get(User, claims.get('id')) if claims.get('id') else None
    if not user:
        raise ApiError('Not authorized, user not found', 401)

    if user.role == 'superadmin':
        g.user = user
        g.school_id, g.school = _superadmin_school_context()
        return user

    school_id = _resolve_school_id(user, claims)
    school = None
    if not school_id:
        if user.role not in ('student', 'parent'):
            raise ApiError('No school associated with this account - please contact administrator', 403)
    else:
        school = db.session.get(School, school_id)
        if not school:
            raise ApiError('School not found', 404)
        if not school.is_active:
            raise ApiError('School account is inactive', 403)

    if not user.is_active:
        raise ApiError('Your account has been disabled. Please contact administrator', 403)

    g.user = user
    g.school_id = school_id
    g.school = school
    return user


def protect(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        authenticate()
        return f(*args, **kwargs)
    return decorated_function


def _current_user():
    user = g.get('user')
    if user is None:
        raise ApiError('Not authorized', 401)
    return user


def roles_required(*roles, message='Not authorized for this action'):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = _current_user()
            if user.role not in roles:
                raise ApiError(message, 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


admin_required = roles_required('admin', 'superadmin', message='Not authorized as an admin')
superadmin_required = roles_required('superadmin', message='Not authorized as a superadmin')
teacher_required = roles_required('teacher', 'admin', 'secretary', message='Not authorized as a teacher')
can_manage_students = roles_required('admin', 'teacher', 'secretary', 'superadmin',
                                     message='Not authorized to access student data')


def user_has_permission(user, key, allow_teachers=False):
    if user.role in ('superadmin', 'admin'):
        return True
    if allow_teachers and user.role == 'teacher':
        return True
    return user.has_permission(key)


def permission_required(key, allow_teachers=False, message=None):
    """Admins and superadmins pass; secretaries need the permission flag"""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = _current_user()
            if not user_has_permission(user, key, allow_teachers):
                raise ApiError(message or f"Not authorized - requires {key} permission", 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


can_manage_grades = permission_required('canManageGrades', allow_teachers=True,
                                        message='Not authorized to manage grades')
can_send_notifications = permission_required('canSendNotifications', allow_teachers=True,
                                             message='Not authorized to send notifications')
