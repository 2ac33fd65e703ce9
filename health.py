from datetime import datetime

from flask import Blueprint, jsonify
from sqlalchemy import text

from app_models import db

health_bp = Blueprint('health', __name__)

VERSION = '1.0.0'


@health_bp.route('/health')
@health_bp.route('/api/health')
def health_check():
    """Health check endpoint for Render and uptime monitors"""
    try:
        db.session.execute(text('SELECT 1'))
        database = 'ok'
    except Exception as e:
        db.session.rollback()
        database = f"error: {e.__class__.__name__}"

    status = 'ok' if database == 'ok' else 'degraded'
    return jsonify({
        'status': status,
        'message': 'Service is running',
        'service': 'gradebook-api',
        'version': VERSION,
        'database': database,
        'timestamp': datetime.utcnow().isoformat() + 'Z',
    }), 200 if status == 'ok' else 503
