from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="gradebook-api",
    version="1.0.0",
    description="Multi-tenant school gradebook REST API with web push notifications",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=[
        'app',
        'app_models',
        'auth',
        'build',
        'check_vapid',
        'config',
        'data_isolation_helpers',
        'directions',
        'errors',
        'forms',
        'grades',
        'gunicorn_config',
        'health',
        'login_attempts',
        'notifications',
        'parents',
        'push_service',
        'push_subscriptions',
        'school_permissions',
        'schools',
        'security',
        'student_stats',
        'subjects',
        'users',
        'wsgi',
    ],
    data_files=[('static', ['static/push-service-worker.js'])],
    install_requires=[
        'Flask>=2.3.3',
        'click>=8.1.0',
        'Flask-SQLAlchemy>=3.0.5',
        'Flask-WTF>=1.2.1',
        'Flask-Cors>=4.0.0',
        'python-dotenv>=1.0.0',
        'SQLAlchemy>=2.0.43',
        'WTForms>=3.0.1',
        'Werkzeug>=2.3.7',
        'gunicorn>=21.2.0',
        'psycopg2-binary>=2.9.9',
        'bcrypt>=4.0.1',
        'python-jose>=3.3.0',
        'pywebpush>=1.14.0',
        'py-vapid>=1.9.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
        ],
    },
    python_requires='>=3.9',
    classifiers=[
        "Programming Language :: Python :: 3",
        "Framework :: Flask",
        "Operating System :: OS Independent",
    ],
    entry_points={
        'console_scripts': [
            'gradebook=wsgi:main',
        ],
    },
)
