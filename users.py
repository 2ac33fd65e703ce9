import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, request
from sqlalchemy import or_

from app_models import db, Direction, Grade, Notification, NotificationRecipient, School, User, \
    SECRETARY_PERMISSION_KEYS
from auth import admin_required, can_manage_students, permission_required, protect
from data_isolation_helpers import get_current_school_id, get_json_body, parse_id, require_school_id, \
    visible_school_ids
from errors import ApiError
from forms import AdminUserForm, ChangePasswordForm, LoginForm, ProfileForm, RegisterForm, UserUpdateForm, \
    as_bool, validate_form
from login_attempts import login_attempts, refresh_limiter
from school_permissions import school_features
from security import TokenError, decode_refresh_token, generate_refresh_token, generate_token, hash_password, \
    revoke_refresh_token, verify_password

logger = logging.getLogger(__name__)

users_bp = Blueprint('users', __name__, url_prefix='/api/users')


def client_ip():
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def email_domain(email):
    return email.split('@')[-1].lower() if email and '@' in email else None


def auth_payload(user):
    """Profile plus a fresh token pair"""
    school_id = user.school_id if user.role != 'superadmin' else None
    return {
        **user.to_dict(),
        'schoolFeatures': school_features(school_id),
        'token': generate_token(user.id, school_id),
        'refreshToken': generate_refresh_token(user.id, school_id),
    }


def _clean_permissions(raw):
    if not isinstance(raw, dict):
        raise ApiError('secretaryPermissions must be an object', 400)
    return {key: as_bool(raw.get(key)) for key in SECRETARY_PERMISSION_KEYS}


def _apply_relations(user, body, school_id):
    """Branch and direction assignment, both limited to the user's school"""
    if 'branchId' in body:
        branch_id = body.get('branchId')
        if branch_id in (None, ''):
            user.branch_id = None
        else:
            branch_id = parse_id(branch_id, 'branchId')
            if branch_id not in (visible_school_ids(school_id) or []):
                raise ApiError('Branch does not belong to this school', 400)
            user.branch_id = branch_id
    if 'directionId' in body:
        direction_id = body.get('directionId')
        if direction_id in (None, ''):
            user.direction_id = None
        else:
            direction = db.session.get(Direction, parse_id(direction_id, 'directionId'))
            if not direction or direction.school_id != school_id:
                raise ApiError('Direction not found', 400)
            user.direction_id = direction.id


def _email_taken(email, school_id, exclude_id=None):
    query = User.query.filter_by(email=email, school_id=school_id)
    if exclude_id:
        query = query.filter(User.id != exclude_id)
    return query.first() is not None


def _get_user_in_scope(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise ApiError('User not found', 404)
    school_id = get_current_school_id()
    if g.user.role == 'superadmin' and school_id is None:
        return user
    if user.school_id != school_id:
        raise ApiError('User not found', 404)
    return user


# Authentication

@users_bp.route('', methods=['POST'])
def register():
    """Self-registration for students and parents"""
    form = validate_form(RegisterForm())
    body = get_json_body()

    if body.get('schoolId'):
        school = db.session.get(School, parse_id(body.get('schoolId'), 'schoolId'))
    else:
        school = School.query.filter_by(email_domain=email_domain(form.email.data)).first()
    if not school:
        raise ApiError('No school found for this email domain', 400)
    if not school.is_active:
        raise ApiError('School account is inactive', 403)

    if _email_taken(form.email.data, school.id):
        raise ApiError('User already exists', 400)

    user = User(
        name=form.name.data,
        email=form.email.data,
        password=hash_password(form.password.data),
        role=form.role.data or 'student',
        school_id=school.id,
        mobile_phone=form.mobilePhone.data or '',
        is_first_login=True,
    )
    db.session.add(user)
    db.session.commit()
    logger.info("Registered %s %s in school %s", user.role, user.id, school.id)
    return jsonify(auth_payload(user)), 201


@users_bp.route('/login', methods=['POST'])
def login():
    """Exchange e-mail and password for tokens"""
    ip = client_ip()
    remaining = login_attempts.lockout_remaining(ip)
    if remaining:
        raise ApiError(f"Too many failed login attempts. Try again in {remaining} seconds", 429,
                       {'retryAfter': remaining})

    form = validate_form(LoginForm())
    email = form.email.data

    user = User.query.filter_by(email=email, role='superadmin').first()
    if user is None:
        school = School.query.filter_by(email_domain=email_domain(email)).first()
        if school:
            user = User.query.filter_by(email=email, school_id=school.id).first()

    if user is None or not verify_password(form.password.data, user.password):
        lockout = login_attempts.record_failure(ip)
        if lockout:
            raise ApiError(f"Too many failed login attempts. Try again in {lockout} seconds", 429,
                           {'retryAfter': lockout})
        raise ApiError('Invalid email or password', 401, {'attemptsRemaining': login_attempts.attempts_left(ip)})

    if not user.is_active:
        raise ApiError('Your account has been disabled. Please contact administrator', 403)
    if user.role != 'superadmin' and user.school and not user.school.is_active:
        raise ApiError('School account is inactive', 403)

    login_attempts.reset(ip)
    user.last_login = datetime.utcnow()
    db.session.commit()
    logger.info("User %s logged in", user.id)
    return jsonify(auth_payload(user))


@users_bp.route('/refresh-token', methods=['POST'])
def refresh_token():
    """Rotate a refresh token into a new token pair"""
    token = get_json_body().get('refreshToken')
    if not token or not isinstance(token, str):
        raise ApiError('Refresh token required', 401)

    if not refresh_limiter.hit(f"{client_ip()}:{token[-10:]}"):
        raise ApiError('Too many token refresh attempts, please try again later', 429)

    try:
        claims = decode_refresh_token(token)
    except TokenError as e:
        raise ApiError(e.message, 401)

    user = db.session.get(User, claims.get('id'))
    if not user or not user.is_active:
        raise ApiError('User not found or disabled', 401)

    revoke_refresh_token(claims)
    school_id = claims.get('schoolId') or (user.school_id if user.role != 'superadmin' else None)
    return jsonify({
        'token': generate_token(user.id, school_id),
        'refreshToken': generate_refresh_token(user.id, school_id),
    })


@users_bp.route('/logout', methods=['POST'])
@protect
def logout():
    """Revoke the caller's refresh token"""
    token = get_json_body().get('refreshToken')
    if token and isinstance(token, str):
        try:
            claims = decode_refresh_token(token)
        except TokenError:
            claims = None
        if claims and claims.get('id') == g.user.id:
            revoke_refresh_token(claims)
    return jsonify({'message': 'Logged out successfully'})


# Own account

@users_bp.route('/me')
@users_bp.route('/profile')
@protect
def get_profile():
    """Current user's profile"""
    data = g.user.to_dict()
    data['schoolFeatures'] = school_features(g.school_id if g.user.role != 'superadmin' else None)
    if g.school is not None:
        data['school'] = {'id': g.school.id, 'name': g.school.name}
    return jsonify(data)


@users_bp.route('/profile', methods=['PUT'])
@protect
def update_profile():
    """Update the caller's own contact details"""
    form = validate_form(ProfileForm())
    body = get_json_body()
    user = g.user
    if 'name' in body and form.name.data:
        user.name = form.name.data
    if 'mobilePhone' in body:
        user.mobile_phone = form.mobilePhone.data or ''
    if 'personalEmail' in body:
        user.personal_email = form.personalEmail.data or ''
    if 'pushNotificationEnabled' in body:
        user.push_notification_enabled = as_bool(body.get('pushNotificationEnabled'), True)
    db.session.commit()
    return jsonify(user.to_dict())


@users_bp.route('/change-password', methods=['POST'])
@protect
def change_password():
    form = validate_form(ChangePasswordForm())
    user = g.user
    if not verify_password(form.currentPassword.data, user.password):
        raise ApiError('Current password is incorrect', 400)
    if form.currentPassword.data == form.newPassword.data:
        raise ApiError('New password must be different from the current password', 400)
    user.password = hash_password(form.newPassword.data)
    user.last_password_change = datetime.utcnow()
    user.require_password_change = False
    user.is_first_login = False
    db.session.commit()
    logger.info("User %s changed password", user.id)
    return jsonify({'message': 'Password changed successfully'})


# Administration

@users_bp.route('')
@protect
@admin_required
def list_users():
    """Users of the current school, optionally filtered by role or search term"""
    school_id = get_current_school_id()
    if school_id is None and g.user.role == 'superadmin':
        query = User.query
    else:
        query = User.query.filter_by(school_id=require_school_id())

    role = request.args.get('role')
    if role:
        query = query.filter_by(role=role)
    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    users = query.order_by(User.name).all()
    return jsonify([u.to_dict() for u in users])


@users_bp.route('/students')
@protect
@can_manage_students
def list_students():
    """Students of the current school"""
    query = User.query.filter_by(school_id=require_school_id(), role='student')
    direction_id = request.args.get('direction', type=int)
    if direction_id:
        query = query.filter_by(direction_id=direction_id)
    return jsonify([u.to_dict() for u in query.order_by(User.name).all()])


@users_bp.route('/admin/create', methods=['POST'])
@protect
@admin_required
def admin_create_user():
    """Create an account inside the current school"""
    form = validate_form(AdminUserForm())
    body = get_json_body()
    school_id = require_school_id()

    if _email_taken(form.email.data, school_id):
        raise ApiError('User already exists', 400)

    user = User(
        name=form.name.data,
        email=form.email.data,
        password=hash_password(form.password.data),
        role=form.role.data,
        school_id=school_id,
        mobile_phone=form.mobilePhone.data or '',
        personal_email=form.personalEmail.data or '',
        require_password_change=True,
        is_first_login=True,
    )
    if form.role.data == 'secretary' and 'secretaryPermissions' in body:
        user.secretary_permissions = _clean_permissions(body.get('secretaryPermissions'))
    _apply_relations(user, body, school_id)

    db.session.add(user)
    db.session.commit()
    logger.info("User %s created %s %s in school %s", g.user.id, user.role, user.id, school_id)
    return jsonify(user.to_dict()), 201


@users_bp.route('/<int:user_id>')
@protect
def get_user(user_id):
    """Single user; students and parents may only read themselves"""
    if g.user.role in ('student', 'parent') and g.user.id != user_id:
        raise ApiError('Not authorized to view this user', 403)
    return jsonify(_get_user_in_scope(user_id).to_dict())


@users_bp.route('/<int:user_id>', methods=['PUT'])
@protect
@permission_required('canManageUsers', message='Not authorized to manage users')
def update_user(user_id):
    form = validate_form(UserUpdateForm())
    body = get_json_body()
    user = _get_user_in_scope(user_id)

    if user.role == 'superadmin' and g.user.role != 'superadmin':
        raise ApiError('Not authorized to modify this user', 403)
    if g.user.role == 'secretary' and (user.role == 'admin' or form.role.data == 'admin'):
        raise ApiError('Secretaries cannot manage admin accounts', 403)

    if 'name' in body and form.name.data:
        user.name = form.name.data
    if 'email' in body and form.email.data and form.email.data != user.email:
        if _email_taken(form.email.data, user.school_id, exclude_id=user.id):
            raise ApiError('Email already in use', 400)
        user.email = form.email.data
    if 'role' in body and form.role.data and user.role != 'superadmin':
        user.role = form.role.data
    if 'password' in body and form.password.data:
        user.password = hash_password(form.password.data)
        user.last_password_change = datetime.utcnow()
    if 'mobilePhone' in body:
        user.mobile_phone = form.mobilePhone.data or ''
    if 'personalEmail' in body:
        user.personal_email = form.personalEmail.data or ''
    if 'active' in body:
        if user.id == g.user.id and not as_bool(body.get('active'), True):
            raise ApiError('You cannot disable your own account', 400)
        user.is_active = as_bool(body.get('active'), True)
    if 'pushNotificationEnabled' in body:
        user.push_notification_enabled = as_bool(body.get('pushNotificationEnabled'), True)
    if 'secretaryPermissions' in body:
        if g.user.role == 'secretary':
            raise ApiError('Secretaries cannot change permissions', 403)
        user.secretary_permissions = _clean_permissions(body.get('secretaryPermissions'))
    if user.school_id:
        _apply_relations(user, body, user.school_id)

    db.session.commit()
    return jsonify(user.to_dict())


@users_bp.route('/<int:user_id>', methods=['DELETE'])
@protect
@admin_required
def delete_user(user_id):
    user = _get_user_in_scope(user_id)
    if user.id == g.user.id:
        raise ApiError('You cannot delete your own account', 400)
    if user.role == 'superadmin':
        raise ApiError('Not authorized to delete this user', 403)
    if Grade.query.filter_by(teacher_id=user.id).first():
        raise ApiError('User has recorded grades; reassign or delete them first', 400)

    Grade.query.filter_by(student_id=user.id).delete()
    NotificationRecipient.query.filter_by(user_id=user.id).delete()
    for notification in Notification.query.filter_by(sender_id=user.id).all():
        db.session.delete(notification)
    db.session.delete(user)
    db.session.commit()
    logger.info("User %s deleted user %s", g.user.id, user_id)
    return jsonify({'message': 'User removed', 'id': user_id})
