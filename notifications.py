"""
Notification endpoints.

A notification is stored once with one recipient row per user. Targets can
be combined: everyone, explicit users, school branches and a role. The
role of the sender limits which of them are allowed.
"""
import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, request
from sqlalchemy import and_, or_

from app_models import db, Notification, NotificationRecipient, School, User
from auth import can_send_notifications, protect
from data_isolation_helpers import get_json_body, parse_id, require_school_id, visible_school_ids
from errors import ApiError
from forms import NotificationForm, NotificationUpdateForm, as_bool, parse_datetime, validate_form
from push_service import push_service
from push_subscriptions import remove_subscription_by_endpoint, save_subscription, vapid_key_response
from school_permissions import require_feature

logger = logging.getLogger(__name__)

notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

ALL_AUDIENCE = ('student', 'teacher', 'admin')
MAX_LIMIT = 100


def _id_list(body, key):
    values = body.get(key) or []
    if not isinstance(values, list):
        raise ApiError(f"{key} must be a list", 400)
    return list(dict.fromkeys(parse_id(v, key) for v in values))


def _expires_at(raw):
    if raw in (None, ''):
        return None
    try:
        return parse_datetime(raw)
    except ValueError:
        raise ApiError('Invalid expiresAt date', 400)


def resolve_recipients(sender, school_id, body, target_role):
    """User ids a notification reaches, plus the branch schools it names"""
    role = sender.role
    if role in ('student', 'parent'):
        raise ApiError('Students cannot send notifications', 403)

    send_to_all = as_bool(body.get('sendToAll'))
    recipient_ids = _id_list(body, 'recipients')
    branch_ids = _id_list(body, 'schoolBranches')

    if not (send_to_all or recipient_ids or branch_ids or target_role != 'all'):
        raise ApiError('Please specify at least one recipient, school branch, or target role', 400)
    if role == 'teacher' and target_role == 'admin':
        raise ApiError('Teachers cannot send notifications to administrators', 403)

    school_users = User.query.filter(User.school_id == school_id, User.is_active.is_(True))
    ids = set()

    if send_to_all:
        if role in ('admin', 'superadmin'):
            roles = ALL_AUDIENCE
        elif role == 'teacher':
            roles = ('student',)
        else:
            raise ApiError('Not authorized to send notifications to everyone', 403)
        ids.update(u.id for u in school_users.filter(User.role.in_(roles)).all())

    if recipient_ids:
        users = User.query.filter(User.id.in_(recipient_ids), User.school_id == school_id).all()
        if len(users) != len(recipient_ids):
            raise ApiError('One or more recipients were not found in this school', 400)
        if role == 'teacher' and any(u.role in ('admin', 'superadmin') for u in users):
            raise ApiError('Teachers cannot send notifications to administrators', 403)
        ids.update(u.id for u in users)

    branches = []
    if branch_ids:
        allowed = visible_school_ids(school_id) or []
        if any(b not in allowed for b in branch_ids):
            raise ApiError('Invalid school branch', 400)
        if role in ('admin', 'superadmin'):
            roles = ALL_AUDIENCE if target_role == 'all' else (target_role,)
        elif role == 'teacher':
            roles = ('student', 'teacher') if target_role == 'all' else (target_role,)
        else:
            raise ApiError('Not authorized to send notifications to school branches', 403)
        in_branches = or_(User.branch_id.in_(branch_ids),
                          and_(User.branch_id.is_(None), User.school_id.in_(branch_ids)))
        ids.update(u.id for u in school_users.filter(User.role.in_(roles), in_branches).all())
        branches = School.query.filter(School.id.in_(branch_ids)).all()
    elif target_role != 'all':
        ids.update(u.id for u in school_users.filter(User.role == target_role).all())

    ids.discard(sender.id)
    return ids, branches


def _get_notification(notification_id):
    notification = db.session.get(Notification, notification_id)
    if not notification or notification.status == 'deleted':
        raise ApiError('Notification not found', 404)
    school_id = g.get('school_id')
    if school_id is not None and notification.school_id != school_id:
        raise ApiError('Notification not found', 404)
    if school_id is None and g.user.role != 'superadmin':
        raise ApiError('Notification not found', 404)
    return notification


def _can_manage(notification):
    return notification.sender_id == g.user.id or g.user.role in ('admin', 'superadmin')


@notifications_bp.route('', methods=['POST'])
@protect
@require_feature('enableNotifications')
@can_send_notifications
def create_notification():
    """Store a notification and push it to its recipients"""
    form = validate_form(NotificationForm())
    body = get_json_body()
    school_id = require_school_id()
    target_role = form.targetRole.data or 'all'

    recipient_ids, branches = resolve_recipients(g.user, school_id, body, target_role)
    if not recipient_ids:
        raise ApiError('No recipients matched the selected targets', 400)

    notification = Notification(
        title=form.title.data,
        message=form.message.data,
        sender_id=g.user.id,
        sender_name=g.user.name,
        sender_role=g.user.role,
        school_id=school_id,
        target_role=target_role,
        send_to_all=as_bool(body.get('sendToAll')),
        urgent=as_bool(body.get('urgent')),
        is_important=as_bool(body.get('isImportant')),
        expires_at=_expires_at(body.get('expiresAt')),
        status='sent',
    )
    notification.school_branches = branches
    notification.recipients = [NotificationRecipient(user_id=uid) for uid in sorted(recipient_ids)]
    db.session.add(notification)
    db.session.commit()
    logger.info("Notification %s sent by %s to %s recipient(s)", notification.id, g.user.id, len(recipient_ids))

    push_summary = push_service.send_notification(notification, recipient_ids)

    data = notification.to_dict(viewer_id=g.user.id)
    data['pushSummary'] = push_summary
    return jsonify(data), 201


@notifications_bp.route('')
@protect
@require_feature('enableNotifications')
def list_notifications():
    """Latest notifications for the caller, newest first"""
    user = g.user
    limit = max(1, min(request.args.get('limit', 10, type=int) or 10, MAX_LIMIT))
    received = Notification.recipients.any(NotificationRecipient.user_id == user.id)

    if user.role in ('student', 'parent'):
        query = Notification.query.filter(received)
    elif user.role in ('teacher', 'admin', 'secretary', 'superadmin'):
        query = Notification.query.filter(or_(Notification.sender_id == user.id, received))
    else:
        raise ApiError('Not authorized to view notifications', 403)

    if g.school_id is not None:
        query = query.filter(Notification.school_id == g.school_id)
    query = query.filter(Notification.status != 'deleted')

    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
    return jsonify([n.to_dict(viewer_id=user.id) for n in notifications])


@notifications_bp.route('/sent')
@protect
@require_feature('enableNotifications')
@can_send_notifications
def sent_notifications():
    """Notifications sent by the caller with delivery statistics"""
    query = Notification.query.filter(Notification.sender_id == g.user.id, Notification.status != 'deleted')
    if g.school_id is not None:
        query = query.filter(Notification.school_id == g.school_id)
    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()
    data = []
    for notification in notifications:
        item = notification.to_dict()
        stats = notification.delivery_stats()
        item.update({
            'totalRecipients': stats['totalRecipients'],
            'readCount': stats['read'],
            'seenCount': stats['seen'],
        })
        data.append(item)
    return jsonify(data)


@notifications_bp.route('/vapid')
@protect
def notification_vapid_key():
    return vapid_key_response()


@notifications_bp.route('/subscription', methods=['POST'])
@protect
def notification_subscribe():
    return save_subscription()


@notifications_bp.route('/subscription', methods=['DELETE'])
@protect
def notification_unsubscribe():
    return remove_subscription_by_endpoint()


@notifications_bp.route('/<int:notification_id>')
@protect
@require_feature('enableNotifications')
def get_notification(notification_id):
    notification = _get_notification(notification_id)
    is_recipient = notification.recipient_entry(g.user.id) is not None
    if not (is_recipient or notification.sender_id == g.user.id or g.user.role == 'superadmin'):
        raise ApiError('Not authorized to view this notification', 403)
    include_recipients = notification.sender_id == g.user.id or g.user.role == 'superadmin'
    return jsonify(notification.to_dict(viewer_id=g.user.id, include_recipients=include_recipients))


def _mark(notification_id, field):
    notification = _get_notification(notification_id)
    entry = notification.recipient_entry(g.user.id)
    if entry is None and g.user.role not in ('admin', 'superadmin'):
        raise ApiError('Not authorized to update this notification', 403)

    label = 'read' if field == 'is_read' else 'seen'
    if entry is None:
        message = 'Not a recipient of this notification'
    elif getattr(entry, field):
        message = f"Already marked as {label}"
    else:
        now = datetime.utcnow()
        if field == 'is_read':
            entry.is_read = True
            entry.read_at = now
        if not entry.is_seen:
            entry.is_seen = True
            entry.seen_at = now
        db.session.commit()
        message = f"Marked as {label}"
    return jsonify({'message': message, 'notification': notification.to_dict(viewer_id=g.user.id)})


@notifications_bp.route('/<int:notification_id>/read', methods=['PUT'])
@protect
@require_feature('enableNotifications')
def mark_read(notification_id):
    return _mark(notification_id, 'is_read')


@notifications_bp.route('/<int:notification_id>/seen', methods=['PUT'])
@protect
@require_feature('enableNotifications')
def mark_seen(notification_id):
    return _mark(notification_id, 'is_seen')


@notifications_bp.route('/<int:notification_id>', methods=['PUT'])
@protect
@require_feature('enableNotifications')
@can_send_notifications
def update_notification(notification_id):
    notification = _get_notification(notification_id)
    if not _can_manage(notification):
        raise ApiError('Not authorized to update this notification', 403)
    form = validate_form(NotificationUpdateForm(obj=notification))
    body = get_json_body()

    if form.title.data:
        notification.title = form.title.data
    if form.message.data:
        notification.message = form.message.data
    if 'urgent' in body:
        notification.urgent = as_bool(body.get('urgent'))
    if 'isImportant' in body:
        notification.is_important = as_bool(body.get('isImportant'))
    if 'expiresAt' in body:
        notification.expires_at = _expires_at(body.get('expiresAt'))
    db.session.commit()
    return jsonify(notification.to_dict(viewer_id=g.user.id))


@notifications_bp.route('/<int:notification_id>', methods=['DELETE'])
@protect
@require_feature('enableNotifications')
@can_send_notifications
def delete_notification(notification_id):
    notification = _get_notification(notification_id)
    if not _can_manage(notification):
        raise ApiError('Not authorized to delete this notification', 403)
    db.session.delete(notification)
    db.session.commit()
    logger.info("Notification %s deleted by %s", notification_id, g.user.id)
    return jsonify({'message': 'Notification removed', 'id': notification_id})
