import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, request

from app_models import db, PushSubscription
from auth import protect
from data_isolation_helpers import get_json_body
from errors import ApiError
from push_service import detect_platform, push_service

logger = logging.getLogger(__name__)

push_bp = Blueprint('push', __name__, url_prefix='/api/push')
subscriptions_bp = Blueprint('subscriptions', __name__, url_prefix='/api/subscriptions')


def _subscription_fields(data):
    """Endpoint and keys from either {subscription: {...}} or a bare subscription"""
    if isinstance(data.get('subscription'), dict):
        data = data['subscription']
    endpoint = data.get('endpoint')
    keys = data.get('keys') if isinstance(data.get('keys'), dict) else {}
    if not isinstance(endpoint, str) or not endpoint or not keys.get('p256dh') or not keys.get('auth'):
        raise ApiError('Invalid subscription - endpoint and keys are required', 400)
    return endpoint, keys, data.get('expirationTime')


def _expiration(raw):
    """Browsers report expirationTime in epoch milliseconds"""
    if raw in (None, ''):
        return None
    try:
        return datetime.utcfromtimestamp(float(raw) / 1000)
    except (TypeError, ValueError, OverflowError, OSError):
        raise ApiError('Invalid expirationTime', 400)


def vapid_key_response():
    public_key = push_service.public_key()
    if not public_key:
        raise ApiError('VAPID public key not configured', 500)
    return jsonify({'success': True, 'vapidPublicKey': public_key})


def save_subscription():
    """Create or refresh the caller's subscription for an endpoint"""
    body = get_json_body()
    endpoint, keys, expiration = _subscription_fields(body)
    user_agent = body.get('userAgent') or request.headers.get('User-Agent', '')
    platform = detect_platform(user_agent, body.get('platform'))

    subscription = PushSubscription.query.filter_by(endpoint=endpoint).first()
    created = subscription is None
    if created:
        subscription = PushSubscription(endpoint=endpoint)
        db.session.add(subscription)
    elif subscription.user_id != g.user.id:
        logger.info("Push endpoint moved from user %s to user %s", subscription.user_id, g.user.id)

    subscription.user_id = g.user.id
    subscription.school_id = g.school_id
    subscription.p256dh = keys['p256dh']
    subscription.auth = keys['auth']
    subscription.expiration_time = _expiration(expiration)
    subscription.user_agent = user_agent[:500]
    subscription.platform = platform
    subscription.is_active = True
    subscription.last_used = datetime.utcnow()
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Subscription created' if created else 'Subscription updated',
        'subscription': subscription.to_dict(),
    }), 201 if created else 200


def remove_subscription_by_endpoint():
    endpoint = get_json_body().get('endpoint') or request.args.get('endpoint')
    if not endpoint:
        raise ApiError('Endpoint is required', 400)
    subscription = PushSubscription.query.filter_by(endpoint=endpoint, user_id=g.user.id).first()
    if not subscription:
        raise ApiError('Subscription not found', 404)
    db.session.delete(subscription)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Subscription removed'})


def list_own_subscriptions():
    subscriptions = (PushSubscription.query
                     .filter_by(user_id=g.user.id, is_active=True)
                     .order_by(PushSubscription.created_at.desc())
                     .all())
    return jsonify({'success': True, 'subscriptions': [s.to_dict() for s in subscriptions],
                    'total': len(subscriptions)})


def remove_subscription_by_id(subscription_id):
    subscription = db.session.get(PushSubscription, subscription_id)
    if not subscription:
        raise ApiError('Subscription not found', 404)
    is_owner = subscription.user_id == g.user.id
    is_admin = g.user.role == 'superadmin' or (
        g.user.role == 'admin' and subscription.school_id is not None and subscription.school_id == g.school_id)
    if not (is_owner or is_admin):
        raise ApiError('Not authorized to delete this subscription', 403)
    db.session.delete(subscription)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Subscription removed'})


# /api/push

@push_bp.route('/vapid-public-key')
def push_vapid_key():
    """VAPID application server key for PushManager.subscribe"""
    return vapid_key_response()


@push_bp.route('/subscription', methods=['POST'])
@protect
def push_subscribe():
    return save_subscription()


@push_bp.route('/subscriptions')
@protect
def push_list_subscriptions():
    return list_own_subscriptions()


@push_bp.route('/subscription', methods=['DELETE'])
@push_bp.route('/subscription/delete', methods=['POST'])
@protect
def push_unsubscribe():
    return remove_subscription_by_endpoint()


@push_bp.route('/subscription/<int:subscription_id>', methods=['DELETE'])
@protect
def push_delete_subscription(subscription_id):
    return remove_subscription_by_id(subscription_id)


@push_bp.route('/subscription/renew', methods=['POST'])
def push_renew_subscription():
    """Swap an expired endpoint for the one the service worker just obtained"""
    body = get_json_body()
    old_endpoint = body.get('oldEndpoint')
    if not old_endpoint:
        raise ApiError('oldEndpoint is required', 400)
    endpoint, keys, expiration = _subscription_fields(body)

    subscription = PushSubscription.query.filter_by(endpoint=old_endpoint).first()
    if not subscription:
        raise ApiError('Subscription not found', 404)

    if endpoint != old_endpoint:
        duplicate = PushSubscription.query.filter_by(endpoint=endpoint).first()
        if duplicate and duplicate.user_id != subscription.user_id:
            raise ApiError('Endpoint is registered to another account', 409)
        if duplicate:
            db.session.delete(duplicate)
            db.session.flush()

    subscription.endpoint = endpoint
    subscription.p256dh = keys['p256dh']
    subscription.auth = keys['auth']
    subscription.expiration_time = _expiration(expiration)
    subscription.is_active = True
    subscription.last_used = datetime.utcnow()
    db.session.commit()
    logger.info("Push subscription %s renewed", subscription.id)
    return jsonify({'success': True, 'message': 'Subscription renewed'})


@push_bp.route('/test', methods=['POST'])
@protect
def push_test():
    """Send a test push to the caller's devices"""
    subscriptions = PushSubscription.query.filter_by(user_id=g.user.id, is_active=True).all()
    if not subscriptions:
        raise ApiError('No active push subscriptions found', 404)
    summary = push_service.send_test(subscriptions)
    return jsonify({'success': summary['successful'] > 0, 'summary': summary})


# /api/subscriptions

@subscriptions_bp.route('/vapidPublicKey')
def subscriptions_vapid_key():
    return vapid_key_response()


@subscriptions_bp.route('', methods=['POST'])
@protect
def subscriptions_create():
    return save_subscription()


@subscriptions_bp.route('')
@protect
def subscriptions_list():
    return list_own_subscriptions()


@subscriptions_bp.route('/<int:subscription_id>', methods=['DELETE'])
@protect
def subscriptions_delete(subscription_id):
    return remove_subscription_by_id(subscription_id)


@subscriptions_bp.route('', methods=['DELETE'])
@subscriptions_bp.route('/delete', methods=['POST'])
@protect
def subscriptions_delete_by_endpoint():
    return remove_subscription_by_endpoint()
