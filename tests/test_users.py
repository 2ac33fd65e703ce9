import pytest

from app_models import db, User
from conftest import PASSWORD, auth
from login_attempts import login_attempts


def login(client, email, password=PASSWORD, ip='10.0.0.1'):
    return client.post('/api/users/login', json={'email': email, 'password': password},
                       headers={'X-Forwarded-For': ip})


def test_login_returns_tokens_and_features(client, data):
    response = login(client, 'admin@alpha.edu')
    assert response.status_code == 200
    body = response.get_json()
    assert body['role'] == 'admin'
    assert body['schoolId'] == data.alpha
    assert body['token'] and body['refreshToken']
    assert body['schoolFeatures']['enableGrades'] is True


def test_login_is_case_insensitive_on_email(client, data):
    assert login(client, 'Teacher@Alpha.EDU').status_code == 200


def test_login_wrong_password_reports_attempts_left(client, data):
    response = login(client, 'admin@alpha.edu', 'wrong-password')
    assert response.status_code == 401
    body = response.get_json()
    assert body['message'] == 'Invalid email or password'
    assert body['attemptsRemaining'] == 4


def test_login_locks_out_after_five_failures(client, data):
    for _ in range(4):
        assert login(client, 'admin@alpha.edu', 'nope-nope', ip='10.0.0.9').status_code == 401
    fifth = login(client, 'admin@alpha.edu', 'nope-nope', ip='10.0.0.9')
    assert fifth.status_code == 429
    assert fifth.get_json()['retryAfter'] == 60

    # Even the right password is refused while locked out
    locked = login(client, 'admin@alpha.edu', ip='10.0.0.9')
    assert locked.status_code == 429
    assert login_attempts.lockout_remaining('10.0.0.9') > 0

    # Other addresses are unaffected
    assert login(client, 'admin@alpha.edu', ip='10.0.0.10').status_code == 200


def test_login_disabled_account(app, client, data):
    with app.app_context():
        db.session.get(User, data.ids['student']).is_active = False
        db.session.commit()
    response = login(client, 'anna@alpha.edu')
    assert response.status_code == 403


def test_login_requires_both_fields(client, data):
    response = client.post('/api/users/login', json={'email': 'admin@alpha.edu'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Please provide email and password'


def test_error_body_shape(client, data):
    response = client.post('/api/users/login', json={})
    body = response.get_json()
    assert set(body) >= {'message', 'stack', 'requestId'}
    assert response.headers['X-Request-Id'] == body['requestId']


def test_register_links_school_by_email_domain(client, data):
    response = client.post('/api/users', json={
        'name': 'New Kid', 'email': 'newkid@alpha.edu', 'password': 'secret123'})
    assert response.status_code == 201
    body = response.get_json()
    assert body['role'] == 'student'
    assert body['schoolId'] == data.alpha
    assert body['token']


def test_register_unknown_domain(client, data):
    response = client.post('/api/users', json={
        'name': 'Lost', 'email': 'lost@nowhere.org', 'password': 'secret123'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'No school found for this email domain'


def test_register_duplicate_email(client, data):
    response = client.post('/api/users', json={
        'name': 'Anna Again', 'email': 'anna@alpha.edu', 'password': 'secret123'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'User already exists'


def test_register_short_password(client, data):
    response = client.post('/api/users', json={'name': 'Short', 'email': 'short@alpha.edu', 'password': '123'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Password must be at least 6 characters'


def test_refresh_token_rotation_and_reuse(client, data):
    refresh = login(client, 'teacher@alpha.edu').get_json()['refreshToken']

    response = client.post('/api/users/refresh-token', json={'refreshToken': refresh})
    assert response.status_code == 200
    rotated = response.get_json()
    assert rotated['token'] and rotated['refreshToken'] != refresh

    reused = client.post('/api/users/refresh-token', json={'refreshToken': refresh})
    assert reused.status_code == 401


def test_refresh_token_required(client, data):
    response = client.post('/api/users/refresh-token', json={})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Refresh token required'


def test_access_token_cannot_refresh(client, data):
    response = client.post('/api/users/refresh-token', json={'refreshToken': data.tokens['teacher']})
    assert response.status_code == 401


def test_logout_revokes_refresh_token(client, data):
    body = login(client, 'teacher@alpha.edu').get_json()
    response = client.post('/api/users/logout', json={'refreshToken': body['refreshToken']},
                           headers=auth(body['token']))
    assert response.status_code == 200
    reused = client.post('/api/users/refresh-token', json={'refreshToken': body['refreshToken']})
    assert reused.status_code == 401


def test_protected_route_needs_token(client, data):
    response = client.get('/api/users/me')
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Not authorized, no token provided'


def test_garbage_token_rejected(client, data):
    response = client.get('/api/users/me', headers=auth('not-a-jwt'))
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Invalid token - please log in again'


def test_profile_and_update(client, data):
    headers = auth(data.tokens['student'])
    profile = client.get('/api/users/profile', headers=headers).get_json()
    assert profile['email'] == 'anna@alpha.edu'
    assert profile['school']['id'] == data.alpha

    response = client.put('/api/users/profile', json={'mobilePhone': '+30 210 1234567',
                                                      'pushNotificationEnabled': False}, headers=headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body['mobilePhone'] == '+30 210 1234567'
    assert body['pushNotificationEnabled'] is False


def test_change_password(client, data):
    headers = auth(data.tokens['teacher'])
    wrong = client.post('/api/users/change-password',
                        json={'currentPassword': 'bad-password', 'newPassword': 'newpass123'}, headers=headers)
    assert wrong.status_code == 400

    response = client.post('/api/users/change-password',
                           json={'currentPassword': PASSWORD, 'newPassword': 'newpass123'}, headers=headers)
    assert response.status_code == 200
    assert login(client, 'teacher@alpha.edu', 'newpass123').status_code == 200


def test_admin_lists_only_own_school(client, data):
    response = client.get('/api/users', headers=auth(data.tokens['admin']))
    assert response.status_code == 200
    emails = {u['email'] for u in response.get_json()}
    assert 'anna@alpha.edu' in emails
    assert 'bea@beta.edu' not in emails


def test_list_users_filters_by_role(client, data):
    response = client.get('/api/users?role=teacher', headers=auth(data.tokens['admin']))
    assert {u['role'] for u in response.get_json()} == {'teacher'}


def test_teacher_cannot_list_users(client, data):
    response = client.get('/api/users', headers=auth(data.tokens['teacher']))
    assert response.status_code == 403


def test_superadmin_needs_school_context_for_students(client, data):
    headers = auth(data.tokens['superadmin'])
    assert client.get('/api/users/students', headers=headers).status_code == 400
    response = client.get(f"/api/users/students?school_id={data.beta}", headers=headers)
    assert response.status_code == 200
    assert [u['email'] for u in response.get_json()] == ['bea@beta.edu']

    by_header = client.get('/api/users/students', headers=auth(data.tokens['superadmin'], **{'X-School-Id': str(data.beta)}))
    assert by_header.status_code == 200


def test_students_filtered_by_direction(client, data):
    response = client.get(f"/api/users/students?direction={data.science}", headers=auth(data.tokens['teacher']))
    assert [u['email'] for u in response.get_json()] == ['anna@alpha.edu']


def test_admin_creates_secretary_with_permissions(client, data):
    response = client.post('/api/users/admin/create', headers=auth(data.tokens['admin']), json={
        'name': 'Sec Two', 'email': 'sec2@alpha.edu', 'password': 'secret123', 'role': 'secretary',
        'secretaryPermissions': {'canManageGrades': True, 'bogus': True},
    })
    assert response.status_code == 201
    body = response.get_json()
    assert body['schoolId'] == data.alpha
    assert body['requirePasswordChange'] is True
    assert body['secretaryPermissions']['canManageGrades'] is True
    assert 'bogus' not in body['secretaryPermissions']


def test_admin_create_rejects_superadmin_role(client, data):
    response = client.post('/api/users/admin/create', headers=auth(data.tokens['admin']), json={
        'name': 'Boss', 'email': 'boss@alpha.edu', 'password': 'secret123', 'role': 'superadmin'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Invalid role'


def test_student_can_only_read_self(client, data):
    headers = auth(data.tokens['student'])
    assert client.get(f"/api/users/{data.ids['student']}", headers=headers).status_code == 200
    assert client.get(f"/api/users/{data.ids['student2']}", headers=headers).status_code == 403


def test_user_in_other_school_is_not_found(client, data):
    response = client.get(f"/api/users/{data.ids['beta_student']}", headers=auth(data.tokens['admin']))
    assert response.status_code == 404


def test_secretary_without_permission_cannot_update_users(client, data):
    response = client.put(f"/api/users/{data.ids['student']}", json={'name': 'X'},
                          headers=auth(data.tokens['secretary']))
    assert response.status_code == 403


def test_secretary_with_permission_cannot_touch_admins(app, client, data):
    with app.app_context():
        db.session.get(User, data.ids['secretary']).secretary_permissions = {'canManageUsers': True}
        db.session.commit()
    headers = auth(data.tokens['secretary'])
    assert client.put(f"/api/users/{data.ids['student']}", json={'name': 'Anna B'},
                      headers=headers).status_code == 200
    assert client.put(f"/api/users/{data.ids['admin']}", json={'name': 'X'},
                      headers=headers).status_code == 403


def test_admin_updates_direction(client, data):
    response = client.put(f"/api/users/{data.ids['student2']}", json={'directionId': data.science},
                          headers=auth(data.tokens['admin']))
    assert response.status_code == 200
    assert response.get_json()['directionId'] == data.science


def test_admin_cannot_delete_self(client, data):
    response = client.delete(f"/api/users/{data.ids['admin']}", headers=auth(data.tokens['admin']))
    assert response.status_code == 400


def test_admin_deletes_student(app, client, data):
    response = client.delete(f"/api/users/{data.ids['student2']}", headers=auth(data.tokens['admin']))
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(User, data.ids['student2']) is None


def test_bearer_prefix_needs_a_space(client, data):
    response = client.get('/api/users/me', headers={'Authorization': 'Bearer' + data.tokens['teacher']})
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Not authorized, no token provided'


@pytest.mark.parametrize('body', [[1, 2], 'abc', 5])
def test_login_rejects_non_object_body(client, data, body):
    response = client.post('/api/users/login', json=body)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Request body must be a JSON object'


def test_update_rejects_list_body(client, data):
    response = client.put(f"/api/users/{data.ids['student']}", json=['name'], headers=auth(data.tokens['admin']))
    assert response.status_code == 400
