import pytest

from app_models import db, Subject, User
from conftest import auth


def test_list_directions_scoped_to_school(client, data):
    response = client.get('/api/directions', headers=auth(data.tokens['teacher']))
    assert response.status_code == 200
    assert [d['name'] for d in response.get_json()] == ['Arts', 'Science']

    other = client.get('/api/directions', headers=auth(data.tokens['beta_admin']))
    assert other.get_json() == []


def test_create_direction(client, data):
    response = client.post('/api/directions', headers=auth(data.tokens['admin']),
                           json={'name': 'Economics', 'description': 'Business track'})
    assert response.status_code == 201
    assert response.get_json()['schoolId'] == data.alpha


def test_duplicate_direction(client, data):
    response = client.post('/api/directions', headers=auth(data.tokens['admin']), json={'name': 'Science'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Direction already exists'


def test_same_direction_name_in_other_school(client, data):
    response = client.post('/api/directions', headers=auth(data.tokens['beta_admin']), json={'name': 'Science'})
    assert response.status_code == 201


def test_teacher_cannot_create_direction(client, data):
    response = client.post('/api/directions', headers=auth(data.tokens['teacher']), json={'name': 'Music'})
    assert response.status_code == 403


def test_update_direction_keeps_name_when_omitted(client, data):
    response = client.put(f"/api/directions/{data.science}", headers=auth(data.tokens['admin']),
                          json={'description': 'STEM'})
    assert response.status_code == 200
    body = response.get_json()
    assert body['name'] == 'Science'
    assert body['description'] == 'STEM'


def test_delete_direction_detaches_students(app, client, data):
    response = client.delete(f"/api/directions/{data.science}", headers=auth(data.tokens['admin']))
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(User, data.ids['student']).direction_id is None
        assert db.session.get(Subject, data.math).directions == []


def test_direction_of_other_school_not_found(client, data):
    response = client.get(f"/api/directions/{data.science}", headers=auth(data.tokens['beta_admin']))
    assert response.status_code == 404


def test_list_subjects(client, data):
    response = client.get('/api/subjects', headers=auth(data.tokens['student']))
    assert [s['name'] for s in response.get_json()] == ['History', 'Math']


def test_teacher_subjects(client, data):
    response = client.get('/api/subjects/teacher', headers=auth(data.tokens['teacher']))
    assert [s['name'] for s in response.get_json()] == ['Math']


def test_direction_subjects(client, data):
    response = client.get(f"/api/subjects/direction/{data.arts}", headers=auth(data.tokens['student']))
    assert [s['name'] for s in response.get_json()] == ['History']


@pytest.mark.filterwarnings('error::sqlalchemy.exc.SAWarning')
def test_create_subject_with_teachers_and_directions(client, data):
    response = client.post('/api/subjects', headers=auth(data.tokens['admin']), json={
        'name': 'Physics',
        'teachers': [data.ids['teacher'], str(data.ids['teacher2'])],
        'directions': [{'id': data.science}],
    })
    assert response.status_code == 201
    body = response.get_json()
    assert {t['id'] for t in body['teachers']} == {data.ids['teacher'], data.ids['teacher2']}
    assert [d['id'] for d in body['directions']] == [data.science]


def test_subject_teacher_must_be_in_school(client, data):
    response = client.post('/api/subjects', headers=auth(data.tokens['admin']), json={
        'name': 'Chemistry', 'teachers': [data.ids['beta_admin']]})
    assert response.status_code == 400


def test_students_cannot_be_subject_teachers(client, data):
    response = client.post('/api/subjects', headers=auth(data.tokens['admin']), json={
        'name': 'Chemistry', 'teachers': [data.ids['student']]})
    assert response.status_code == 400


def test_duplicate_subject(client, data):
    response = client.post('/api/subjects', headers=auth(data.tokens['admin']), json={'name': 'Math'})
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Subject already exists'


def test_update_subject_teachers(client, data):
    response = client.put(f"/api/subjects/{data.math}", headers=auth(data.tokens['admin']),
                          json={'teachers': [data.ids['teacher2']]})
    assert response.status_code == 200
    body = response.get_json()
    assert body['name'] == 'Math'
    assert [t['id'] for t in body['teachers']] == [data.ids['teacher2']]


def test_secretary_needs_subject_permission(app, client, data):
    headers = auth(data.tokens['secretary'])
    assert client.post('/api/subjects', headers=headers, json={'name': 'Art'}).status_code == 403
    with app.app_context():
        db.session.get(User, data.ids['secretary']).secretary_permissions = {'canManageSubjects': True}
        db.session.commit()
    assert client.post('/api/subjects', headers=headers, json={'name': 'Art'}).status_code == 201


def test_delete_subject(app, client, data):
    response = client.delete(f"/api/subjects/{data.history}", headers=auth(data.tokens['admin']))
    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Subject, data.history) is None
