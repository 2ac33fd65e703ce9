"""
Web push delivery through VAPID-signed requests.

A single ``push_service`` instance is shared by the views; VAPID settings
are read from the active app config on every call.
"""
import json
import logging
import re
import time
from datetime import datetime

from flask import current_app
from pywebpush import WebPushException, webpush

from app_models import db, PushSubscription, User

logger = logging.getLogger(__name__)

DEFAULT_TITLE = 'GradeBook'
DEFAULT_URL = '/app/notifications'
ICON = '/logo192.png'
BADGE = '/badge-icon.png'
DEFAULT_TTL = 86400
TEST_TTL = 300
EXPIRED_STATUS_CODES = (404, 410)

URGENT_VIBRATION = [200, 100, 200]
NORMAL_VIBRATION = [100, 50, 100]

_B64URL_RE = re.compile(r'^[A-Za-z0-9_-]+$')


def vapid_subject(email):
    if not email:
        return None
    return email if email.startswith('mailto:') else f"mailto:{email}"


def validate_vapid_settings(email, public_key, private_key):
    """List the problems with a VAPID configuration, empty when usable"""
    problems = []
    if not email:
        problems.append('VAPID_EMAIL is not set')
    else:
        address = email[len('mailto:'):] if email.startswith('mailto:') else email
        if '@' not in address or '.' not in address:
            problems.append('VAPID_EMAIL must be a valid e-mail address')
    if not public_key:
        problems.append('VAPID_PUBLIC_KEY is not set')
    elif len(public_key) != 87 or not public_key.startswith('B') or not _B64URL_RE.match(public_key):
        problems.append('VAPID_PUBLIC_KEY must be an 87 character url-safe base64 key starting with "B"')
    if not private_key:
        problems.append('VAPID_PRIVATE_KEY is not set')
    elif len(private_key) != 43 or not _B64URL_RE.match(private_key):
        problems.append('VAPID_PRIVATE_KEY must be a 43 character url-safe base64 key')
    return problems


def detect_platform(user_agent, reported=None):
    """Platform flags from the client report, falling back to the user agent"""
    ua = (user_agent or '').lower()
    platform = {
        'isIOS': any(s in ua for s in ('iphone', 'ipad', 'ipod')),
        'isAndroid': 'android' in ua,
        'isWindows': 'windows' in ua,
        'isSafari': 'safari' in ua and 'chrome' not in ua and 'crios' not in ua,
        'isChrome': ('chrome' in ua or 'crios' in ua) and 'edg' not in ua,
        'isFirefox': 'firefox' in ua or 'fxios' in ua,
        'isPWA': False,
    }
    if platform['isFirefox']:
        browser = 'Firefox'
    elif 'edg' in ua:
        browser = 'Edge'
    elif platform['isChrome']:
        browser = 'Chrome'
    elif platform['isSafari']:
        browser = 'Safari'
    else:
        browser = 'Unknown'
    if platform['isIOS']:
        os_name = 'iOS'
    elif platform['isAndroid']:
        os_name = 'Android'
    elif platform['isWindows']:
        os_name = 'Windows'
    elif 'mac os' in ua:
        os_name = 'macOS'
    elif 'linux' in ua:
        os_name = 'Linux'
    else:
        os_name = 'Unknown'
    platform['browserName'] = browser
    platform['osName'] = os_name

    if isinstance(reported, dict):
        for key in platform:
            if key in reported and reported[key] is not None:
                platform[key] = reported[key]
    return platform


class PushService:
    def init_app(self, app):
        problems = validate_vapid_settings(app.config.get('VAPID_EMAIL'),
                                           app.config.get('VAPID_PUBLIC_KEY'),
                                           app.config.get('VAPID_PRIVATE_KEY'))
        if problems:
            app.logger.warning("Web push disabled: %s", '; '.join(problems))
        else:
            app.logger.info("Web push configured with VAPID subject %s", vapid_subject(app.config['VAPID_EMAIL']))
        app.extensions['push_service'] = self

    def settings(self):
        config = current_app.config
        return {
            'subject': vapid_subject(config.get('VAPID_EMAIL')),
            'public_key': config.get('VAPID_PUBLIC_KEY'),
            'private_key': config.get('VAPID_PRIVATE_KEY'),
        }

    def is_configured(self):
        config = current_app.config
        return not validate_vapid_settings(config.get('VAPID_EMAIL'),
                                           config.get('VAPID_PUBLIC_KEY'),
                                           config.get('VAPID_PRIVATE_KEY'))

    def public_key(self):
        return current_app.config.get('VAPID_PUBLIC_KEY') if self.is_configured() else None

    def build_payload(self, data, platform=None):
        """Platform-specific payload for one subscription"""
        notification_id = data.get('notificationId')
        timestamp = int(time.time() * 1000)
        urgent = bool(data.get('urgent'))
        payload = {
            'title': data.get('title') or DEFAULT_TITLE,
            'body': data.get('body') or 'New notification',
            'icon': ICON,
            'badge': BADGE,
            'url': data.get('url') or DEFAULT_URL,
            'notificationId': notification_id,
            'timestamp': timestamp,
            'urgent': urgent,
        }
        platform = platform or {}
        tag_id = notification_id or timestamp
        if platform.get('isIOS'):
            # iOS ignores vibration patterns
            payload['tag'] = f"ios-{tag_id}"
        elif platform.get('isAndroid'):
            payload['tag'] = f"android-{tag_id}"
            payload['vibrate'] = URGENT_VIBRATION if urgent else NORMAL_VIBRATION
        else:
            payload['tag'] = f"desktop-{tag_id}"
            payload['vibrate'] = URGENT_VIBRATION if urgent else NORMAL_VIBRATION
        return payload

    def send_to_subscription(self, subscription, data, ttl=DEFAULT_TTL):
        """Deliver one push; never raises"""
        settings = self.settings()
        payload = self.build_payload(data, subscription.platform)
        try:
            response = webpush(
                subscription_info=subscription.subscription_info(),
                data=json.dumps(payload),
                vapid_private_key=settings['private_key'],
                vapid_claims={'sub': settings['subject']},
                ttl=ttl,
                headers={'Urgency': 'high' if payload['urgent'] else 'normal'},
            )
        except WebPushException as e:
            status_code = e.response.status_code if e.response is not None else None
            subscription.update_stats(False, str(e), status_code)
            if status_code in EXPIRED_STATUS_CODES:
                logger.info("Push subscription %s expired (%s)", subscription.id, status_code)
                return {'success': False, 'expired': True, 'statusCode': status_code}
            logger.warning("Push to subscription %s failed: %s", subscription.id, e)
            return {'success': False, 'error': str(e), 'statusCode': status_code}
        except Exception as e:
            subscription.update_stats(False, str(e))
            logger.exception("Push to subscription %s raised", subscription.id)
            return {'success': False, 'error': str(e), 'statusCode': None}

        subscription.update_stats(True)
        return {'success': True, 'statusCode': getattr(response, 'status_code', None)}

    def send_to_subscriptions(self, subscriptions, data, ttl=DEFAULT_TTL):
        """Deliver to many subscriptions and drop the expired ones"""
        summary = {'total': len(subscriptions), 'successful': 0, 'failed': 0, 'expired': 0}
        if not subscriptions:
            return summary
        if not self.is_configured():
            logger.warning("Skipping %s push(es): VAPID is not configured", len(subscriptions))
            summary['failed'] = len(subscriptions)
            return summary

        expired = []
        for subscription in subscriptions:
            result = self.send_to_subscription(subscription, data, ttl=ttl)
            if result['success']:
                summary['successful'] += 1
            else:
                summary['failed'] += 1
                if result.get('expired'):
                    summary['expired'] += 1
                    expired.append(subscription)

        for subscription in expired:
            db.session.delete(subscription)
        db.session.commit()

        logger.info("Push batch: %s", summary)
        return summary

    def send_to_users(self, user_ids, data, ttl=DEFAULT_TTL):
        """Push to the active subscriptions of users who allow push"""
        if not user_ids:
            return {'total': 0, 'successful': 0, 'failed': 0, 'expired': 0}
        subscriptions = (PushSubscription.query
                         .join(User, PushSubscription.user_id == User.id)
                         .filter(PushSubscription.user_id.in_(list(user_ids)),
                                 PushSubscription.is_active.is_(True),
                                 User.push_notification_enabled.is_(True))
                         .all())
        live = [s for s in subscriptions if not s.is_expired()]
        if len(live) != len(subscriptions):
            for subscription in subscriptions:
                if subscription.is_expired():
                    subscription.is_active = False
            db.session.commit()
        return self.send_to_subscriptions(live, data, ttl=ttl)

    def send_notification(self, notification, user_ids):
        """Push a stored notification to its recipients"""
        data = {
            'title': notification.title,
            'body': notification.message[:100],
            'url': f"/notifications/{notification.id}",
            'notificationId': notification.id,
            'urgent': notification.urgent,
        }
        return self.send_to_users(user_ids, data)

    def send_test(self, subscriptions):
        data = {
            'title': 'Test Notification',
            'body': f"Push notifications are working ({datetime.utcnow():%H:%M:%S} UTC)",
            'url': DEFAULT_URL,
            'notificationId': f"test-{int(time.time() * 1000)}",
        }
        return self.send_to_subscriptions(subscriptions, data, ttl=TEST_TTL)


push_service = PushService()
