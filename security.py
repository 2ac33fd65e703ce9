import uuid
from datetime import datetime

import bcrypt
from flask import current_app, g
from jose import ExpiredSignatureError, JWTError, jwt

JWT_ALGORITHM = 'HS256'

# Refresh token ids revoked by rotation or logout (per worker process)
_revoked_refresh_tokens = set()


class TokenError(Exception):
    """Raised when a bearer token cannot be used"""

    def __init__(self, message, expired=False):
        super().__init__(message)
        self.message = message
        self.expired = expired


def add_security_headers(response):
    """Add security headers to response"""
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Referrer-Policy'] = 'same-origin'
    response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'

    request_id = g.get('request_id')
    if request_id:
        response.headers['X-Request-Id'] = request_id

    # The service worker must never be cached, everything else under /api is private
    if response.mimetype == 'application/javascript':
        response.headers['Cache-Control'] = 'no-cache'
    elif any(response.mimetype.startswith(t) for t in ['text/css', 'image/']):
        response.headers['Cache-Control'] = 'public, max-age=31536000'
    else:
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'

    return response


def init_security(app):
    """Initialize security features for the Flask app"""
    if app.config.get('PREFERRED_URL_SCHEME') == 'https':
        app.config['SESSION_COOKIE_SECURE'] = True

    # Add security headers to all responses
    app.after_request(add_security_headers)


# Passwords

def is_password_hash(value):
    return isinstance(value, str) and value.startswith(('$2a$', '$2b$', '$2y$')) and len(value) == 60


def hash_password(password):
    """Hash a password with bcrypt, leaving existing hashes untouched"""
    if is_password_hash(password):
        return password
    rounds = current_app.config.get('BCRYPT_ROUNDS', 12)
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds)).decode('utf-8')


def verify_password(password, hashed):
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # Stored value is not a bcrypt hash
        return False


# Tokens

def _jwt_secret():
    secret = current_app.config.get('JWT_SECRET')
    if not secret:
        raise RuntimeError('JWT_SECRET is not configured')
    return secret


def generate_token(user_id, school_id=None):
    """Create an access token for a user"""
    now = datetime.utcnow()
    claims = {'id': user_id, 'iat': now, 'exp': now + current_app.config['JWT_ACCESS_EXPIRES']}
    if school_id:
        claims['schoolId'] = school_id
    return jwt.encode(claims, _jwt_secret(), algorithm=JWT_ALGORITHM)


def generate_refresh_token(user_id, school_id=None):
    """Create a refresh token carrying its own id so it can be revoked"""
    now = datetime.utcnow()
    claims = {
        'id': user_id,
        'type': 'refresh',
        'jti': uuid.uuid4().hex,
        'iat': now,
        'exp': now + current_app.config['JWT_REFRESH_EXPIRES'],
    }
    if school_id:
        claims['schoolId'] = school_id
    return jwt.encode(claims, _jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token):
    try:
        return jwt.decode(token, _jwt_secret(), algorithms=[JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise TokenError('Token expired - please log in again', expired=True)
    except JWTError:
        raise TokenError('Invalid token - please log in again')


def decode_refresh_token(token):
    claims = decode_token(token)
    if claims.get('type') != 'refresh' or not claims.get('jti'):
        raise TokenError('Invalid refresh token')
    if claims['jti'] in _revoked_refresh_tokens:
        raise TokenError('Refresh token has been revoked')
    return claims


def revoke_refresh_token(claims):
    jti = claims.get('jti')
    if jti:
        _revoked_refresh_tokens.add(jti)


def clear_revoked_tokens():
    _revoked_refresh_tokens.clear()
