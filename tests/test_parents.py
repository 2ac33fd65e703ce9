import pytest

from app_models import db, User
from conftest import PASSWORD, auth
from security import generate_token


def create_parent(client, data, student_keys=('student',), email='pat@alpha.edu'):
    return client.post('/api/users/create-parent', headers=auth(data.tokens['admin']), json={
        'studentIds': [data.ids[key] for key in student_keys],
        'parentName': 'Pat Parent',
        'parentEmail': email,
        'parentPassword': PASSWORD,
    })


@pytest.fixture
def parent(app, client, data):
    """Parent linked to Anna, with one grade on record"""
    body = create_parent(client, data).get_json()
    client.post('/api/grades', headers=auth(data.tokens['teacher']), json={
        'student': data.ids['student'], 'subject': data.math, 'value': 88, 'date': '2024-03-01',
    })
    with app.app_context():
        token = generate_token(body['id'], data.alpha)
    return body['id'], token


def test_create_parent_links_students(client, data):
    response = create_parent(client, data)
    assert response.status_code == 201
    body = response.get_json()
    assert body['role'] == 'parent'
    assert body['linkedStudentIds'] == [data.ids['student']]
    assert body['linkedStudentNames'] == ['Anna Student']
    assert body['requirePasswordChange'] is True


def test_existing_parent_gets_more_students(client, data):
    create_parent(client, data)
    response = create_parent(client, data, student_keys=('student', 'student2'))
    assert response.status_code == 200
    body = response.get_json()
    assert body['message'] == 'Parent linked to additional students'
    assert sorted(body['linkedStudentIds']) == sorted([data.ids['student'], data.ids['student2']])

    again = create_parent(client, data, student_keys=('student2',))
    assert again.status_code == 400
    assert again.get_json()['message'] == 'Parent is already linked to all specified students'


def test_create_parent_rejects_non_parent_email(client, data):
    response = create_parent(client, data, email='teacher@alpha.edu')
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Email already exists for a non-parent account'


def test_create_parent_requires_students_of_the_school(client, data):
    response = create_parent(client, data, student_keys=('beta_student',))
    assert response.status_code == 404

    missing = client.post('/api/users/create-parent', headers=auth(data.tokens['admin']),
                          json={'parentName': 'X', 'parentEmail': 'x@alpha.edu', 'parentPassword': PASSWORD})
    assert missing.status_code == 400


def test_create_parent_is_admin_only(client, data):
    response = client.post('/api/users/create-parent', headers=auth(data.tokens['teacher']), json={
        'studentIds': [data.ids['student']], 'parentName': 'P', 'parentEmail': 'p@alpha.edu',
        'parentPassword': PASSWORD})
    assert response.status_code == 403


def test_student_parents_and_parent_students(client, data, parent):
    parent_id, _ = parent
    response = client.get(f"/api/users/student/{data.ids['student']}/parents", headers=auth(data.tokens['admin']))
    body = response.get_json()
    assert body['hasParents'] is True
    assert [p['id'] for p in body['parents']] == [parent_id]

    listing = client.get(f"/api/users/parent/{parent_id}/students", headers=auth(data.tokens['admin'])).get_json()
    assert listing['studentsCount'] == 1
    assert listing['students'][0]['id'] == data.ids['student']


def test_link_and_unlink_students(app, client, data, parent):
    parent_id, _ = parent
    linked = client.post(f"/api/users/parent/{parent_id}/students", headers=auth(data.tokens['admin']),
                         json={'studentIds': [data.ids['student2']]})
    assert linked.status_code == 200
    assert len(linked.get_json()['linkedStudentIds']) == 2

    response = client.delete(f"/api/users/parent/{parent_id}/students", headers=auth(data.tokens['admin']),
                             json={'studentIds': [data.ids['student']]})
    assert response.status_code == 200
    assert response.get_json()['remainingLinkedStudents'] == 1
    with app.app_context():
        assert [c.id for c in db.session.get(User, parent_id).children] == [data.ids['student2']]


def test_unknown_parent_is_404(client, data):
    response = client.get(f"/api/users/parent/{data.ids['teacher']}/students", headers=auth(data.tokens['admin']))
    assert response.status_code == 404


def test_parent_reads_linked_student_grades(client, data, parent):
    _, token = parent
    response = client.get(f"/api/grades/student/{data.ids['student']}", headers=auth(token))
    assert response.status_code == 200
    assert [g['value'] for g in response.get_json()] == [88]

    subject = client.get(f"/api/grades/subject/{data.math}", headers=auth(token))
    assert [g['student']['id'] for g in subject.get_json()] == [data.ids['student']]


def test_parent_cannot_read_other_students(client, data, parent):
    _, token = parent
    response = client.get(f"/api/grades/student/{data.ids['student2']}", headers=auth(token))
    assert response.status_code == 403


def test_parent_students_data(client, data, parent):
    _, token = parent
    client.post('/api/notifications', headers=auth(data.tokens['admin']),
                json={'title': 'Trip', 'message': 'Bring lunch', 'recipients': [data.ids['student']]})

    response = client.get('/api/users/parent/students-data', headers=auth(token))
    assert response.status_code == 200
    body = response.get_json()
    assert body['studentsCount'] == 1
    entry = body['studentsData'][0]
    assert entry['student']['name'] == 'Anna Student'
    assert entry['recentGrades'][0]['subject'] == 'Math'
    assert entry['recentNotifications'][0]['title'] == 'Trip'
    assert body['combinedRecentGrades'][0]['studentName'] == 'Anna Student'


def test_students_data_is_parent_only(client, data):
    response = client.get('/api/users/parent/students-data', headers=auth(data.tokens['student']))
    assert response.status_code == 403


def test_teacher_students(client, data):
    response = client.get('/api/users/teacher-students', headers=auth(data.tokens['teacher']))
    assert response.status_code == 200
    assert [s['email'] for s in response.get_json()] == ['anna@alpha.edu']
    assert client.get('/api/users/teacher-students', headers=auth(data.tokens['admin'])).status_code == 403
