from types import SimpleNamespace

import pytest
from pywebpush import WebPushException

import push_service as push_module
from app import create_app
from app_models import db, Direction, School, SchoolPermissions, Subject, User
from login_attempts import login_attempts, refresh_limiter
from security import clear_revoked_tokens, generate_token, hash_password

PASSWORD = 'password123'


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
    login_attempts.clear()
    refresh_limiter.clear()
    clear_revoked_tokens()


@pytest.fixture
def client(app):
    return app.test_client()


def auth(token, **headers):
    headers['Authorization'] = f"Bearer {token}"
    return headers


def _user(name, email, role, school, **kwargs):
    user = User(
        name=name,
        email=email,
        password=hash_password(PASSWORD),
        role=role,
        school_id=school.id if school else None,
        is_first_login=False,
        **kwargs
    )
    db.session.add(user)
    return user


@pytest.fixture
def data(app):
    """Two schools, a branch and one account per role"""
    with app.app_context():
        alpha = School(name='Alpha High', address='1 Main St', email_domain='alpha.edu')
        beta = School(name='Beta Academy', address='2 Side St', email_domain='beta.edu')
        db.session.add_all([alpha, beta])
        db.session.flush()
        north = School(name='Alpha North', address='3 North Rd', email_domain='alphanorth.edu',
                       parent_cluster_id=alpha.id)
        db.session.add(north)
        alpha.is_cluster_school = True
        db.session.flush()
        SchoolPermissions.create_default(alpha.id)
        SchoolPermissions.create_default(beta.id)

        science = Direction(name='Science', school_id=alpha.id)
        arts = Direction(name='Arts', school_id=alpha.id)
        db.session.add_all([science, arts])
        db.session.flush()

        superadmin = _user('Root', 'root@gradebook.test', 'superadmin', None)
        admin = _user('Alice Admin', 'admin@alpha.edu', 'admin', alpha)
        teacher = _user('Tom Teacher', 'teacher@alpha.edu', 'teacher', alpha)
        teacher2 = _user('Tina Teacher', 'teacher2@alpha.edu', 'teacher', alpha)
        secretary = _user('Sam Secretary', 'secretary@alpha.edu', 'secretary', alpha)
        student = _user('Anna Student', 'anna@alpha.edu', 'student', alpha, direction_id=science.id)
        student2 = _user('Ben Student', 'ben@alpha.edu', 'student', alpha, direction_id=arts.id)
        north_student = _user('Nora North', 'nora@alpha.edu', 'student', alpha, branch_id=north.id)
        beta_admin = _user('Bob Admin', 'admin@beta.edu', 'admin', beta)
        beta_student = _user('Bea Student', 'bea@beta.edu', 'student', beta)
        db.session.flush()

        math = Subject(name='Math', school_id=alpha.id)
        math.teachers = [teacher]
        math.directions = [science]
        history = Subject(name='History', school_id=alpha.id)
        history.teachers = [teacher2]
        history.directions = [arts]
        beta_math = Subject(name='Math', school_id=beta.id)
        db.session.add_all([math, history, beta_math])
        db.session.commit()

        users = {
            'superadmin': superadmin, 'admin': admin, 'teacher': teacher, 'teacher2': teacher2,
            'secretary': secretary, 'student': student, 'student2': student2,
            'north_student': north_student, 'beta_admin': beta_admin, 'beta_student': beta_student,
        }
        ids = {key: user.id for key, user in users.items()}
        tokens = {key: generate_token(user.id, user.school_id) for key, user in users.items()}

        return SimpleNamespace(
            ids=ids,
            tokens=tokens,
            alpha=alpha.id,
            beta=beta.id,
            north=north.id,
            science=science.id,
            arts=arts.id,
            math=math.id,
            history=history.id,
            beta_math=beta_math.id,
        )


class FakeResponse:
    def __init__(self, status_code, text=''):
        self.status_code = status_code
        self.text = text


@pytest.fixture
def webpush_calls(monkeypatch):
    """Records pushes; endpoints listed in ``gone`` answer 410"""
    calls = SimpleNamespace(sent=[], gone=set())

    def fake_webpush(subscription_info, data, vapid_private_key, vapid_claims, ttl, headers):
        if subscription_info['endpoint'] in calls.gone:
            raise WebPushException('Push failed: 410 Gone', response=FakeResponse(410, 'Gone'))
        calls.sent.append({'endpoint': subscription_info['endpoint'], 'data': data,
                           'claims': vapid_claims, 'ttl': ttl, 'headers': headers})
        return FakeResponse(201)

    monkeypatch.setattr(push_module, 'webpush', fake_webpush)
    return calls


def subscription_body(endpoint='https://push.example.com/send/abc', **extra):
    body = {
        'subscription': {
            'endpoint': endpoint,
            'keys': {'p256dh': 'BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM',
                     'auth': 'tBHItJI5svbpez7KI4CCXg'},
        },
    }
    body.update(extra)
    return body
