import logging
import logging.config
import os

import click
from flask import Flask, current_app, jsonify, send_from_directory
from flask_cors import CORS

from app_models import db, School, SchoolPermissions, User
from config import get_config
from errors import register_error_handlers
from push_service import push_service
from security import hash_password, init_security

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level):
    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'default': {'format': LOG_FORMAT},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'default',
                'stream': 'ext://sys.stdout',
            },
        },
        'root': {'level': level, 'handlers': ['console']},
        'loggers': {
            # pywebpush logs every request body at DEBUG
            'pywebpush': {'level': 'WARNING'},
            'urllib3': {'level': 'WARNING'},
        },
    })


def create_app(config_name=None):
    config_class = get_config(config_name)
    configure_logging(config_class.LOG_LEVEL)

    app = Flask(
        __name__,
        static_folder=os.path.join(os.path.dirname(os.path.abspath(__file__)), 'static'),
    )
    app.config.from_object(config_class)
    config_class.init_app(app)

    db.init_app(app)
    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}},
         expose_headers=['X-Request-Id'])

    init_security(app)
    register_error_handlers(app)
    push_service.init_app(app)

    register_blueprints(app)
    register_routes(app)
    register_commands(app)

    logger.info("GradeBook API started with %s config", app.config['ENV_NAME'])
    return app


def register_blueprints(app):
    from directions import directions_bp
    from grades import grades_bp
    from health import health_bp
    from notifications import notifications_bp
    from parents import parents_bp
    from push_subscriptions import push_bp, subscriptions_bp
    from school_permissions import school_permissions_bp
    from schools import schools_bp
    from student_stats import student_stats_bp
    from subjects import subjects_bp
    from users import users_bp

    for blueprint in (users_bp, parents_bp, schools_bp, directions_bp, subjects_bp, grades_bp, notifications_bp,
                      push_bp, subscriptions_bp, student_stats_bp, school_permissions_bp, health_bp):
        app.register_blueprint(blueprint)


def register_routes(app):
    @app.route('/')
    def index():
        return jsonify({'message': 'GradeBook API is running'})

    @app.route('/push-service-worker.js')
    def push_service_worker():
        """Service worker served from the root so it can control the whole origin"""
        response = send_from_directory(app.static_folder, 'push-service-worker.js',
                                       mimetype='application/javascript')
        response.headers['Service-Worker-Allowed'] = '/'
        return response

    # Serve favicon if present, otherwise return 204 to avoid log spam
    @app.route('/favicon.ico')
    def favicon():
        icon_path = os.path.join(app.static_folder, 'favicon.ico')
        if os.path.exists(icon_path):
            return send_from_directory(app.static_folder, 'favicon.ico', mimetype='image/x-icon')
        return ('', 204)


def create_default_superadmin():
    """Creates the seed superadmin when none exists. Returns the user or None."""
    email = os.environ.get('DEFAULT_SUPERADMIN_EMAIL') or current_app.config.get('DEFAULT_SUPERADMIN_EMAIL')
    password = os.environ.get('DEFAULT_SUPERADMIN_PASSWORD') or current_app.config.get('DEFAULT_SUPERADMIN_PASSWORD')

    if not email or not password:
        logger.warning("DEFAULT_SUPERADMIN_EMAIL and/or DEFAULT_SUPERADMIN_PASSWORD are not set. "
                       "Skipping default superadmin creation.")
        return None

    if User.query.filter_by(role='superadmin').first() is not None:
        return None

    user = User(
        name='Super Admin',
        email=email.strip().lower(),
        password=hash_password(password),
        role='superadmin',
        school_id=None,
        is_active=True,
        is_first_login=False,
    )
    db.session.add(user)
    db.session.commit()
    logger.info("Default superadmin %s created", user.email)
    return user


def ensure_school_permissions():
    """Top-level schools without a feature row get the defaults"""
    created = 0
    for school in School.query.filter(School.parent_cluster_id.is_(None)).all():
        if SchoolPermissions.query.filter_by(school_id=school.id).first() is None:
            SchoolPermissions.create_default(school.id)
            created += 1
    if created:
        db.session.commit()
    return created


def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create tables and the default superadmin."""
        db.create_all()
        click.echo("Database tables created.")
        created = ensure_school_permissions()
        if created:
            click.echo(f"Created default feature toggles for {created} school(s).")
        if create_default_superadmin():
            click.echo("Default superadmin created.")

    @app.cli.command('check-vapid')
    def check_vapid_command():
        """Validate the configured VAPID keys."""
        from check_vapid import check_vapid
        ok = check_vapid(app.config.get('VAPID_EMAIL'),
                         app.config.get('VAPID_PUBLIC_KEY'),
                         app.config.get('VAPID_PRIVATE_KEY'),
                         echo=click.echo)
        if not ok:
            raise SystemExit(1)


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
        ensure_school_permissions()
        create_default_superadmin()

    # This block is for local development only.
    # In production, gunicorn serves wsgi:app.
    print("\n" + "=" * 50)
    print("Starting local development server...")
    print("API available at: http://127.0.0.1:5001/api")
    print("=" * 50 + "\n")
    app.run(host='127.0.0.1', port=5001, debug=True)
