from app_models import db, Notification, NotificationRecipient
from conftest import auth, subscription_body


def send(client, data, token='admin', **body):
    payload = {'title': 'School closed', 'message': 'Snow day tomorrow'}
    payload.update(body)
    return client.post('/api/notifications', headers=auth(data.tokens[token]), json=payload)


def recipient_ids(app, notification_id):
    with app.app_context():
        rows = NotificationRecipient.query.filter_by(notification_id=notification_id).all()
        return {row.user_id for row in rows}


def test_admin_sends_to_everyone(app, client, data, webpush_calls):
    response = send(client, data, sendToAll=True)
    assert response.status_code == 201
    body = response.get_json()
    assert body['sender']['id'] == data.ids['admin']
    assert body['pushSummary'] == {'total': 0, 'successful': 0, 'failed': 0, 'expired': 0}

    ids = recipient_ids(app, body['id'])
    assert data.ids['admin'] not in ids
    assert {data.ids['teacher'], data.ids['student'], data.ids['north_student']} <= ids
    # secretaries are not part of the "everyone" audience
    assert data.ids['secretary'] not in ids
    assert data.ids['beta_student'] not in ids


def test_teacher_send_to_all_reaches_students_only(app, client, data, webpush_calls):
    response = send(client, data, token='teacher', sendToAll=True)
    assert response.status_code == 201
    ids = recipient_ids(app, response.get_json()['id'])
    assert ids == {data.ids['student'], data.ids['student2'], data.ids['north_student']}


def test_teacher_cannot_target_admins(client, data):
    response = send(client, data, token='teacher', targetRole='admin')
    assert response.status_code == 403
    assert response.get_json()['message'] == 'Teachers cannot send notifications to administrators'

    direct = send(client, data, token='teacher', recipients=[data.ids['admin']])
    assert direct.status_code == 403


def test_students_cannot_send(client, data):
    assert send(client, data, token='student', sendToAll=True).status_code == 403


def test_target_is_required(client, data):
    response = send(client, data)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Please specify at least one recipient, school branch, or target role'


def test_title_and_message_required(client, data):
    response = send(client, data, title='', sendToAll=True)
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Please provide title and message'


def test_target_role(app, client, data, webpush_calls):
    response = send(client, data, targetRole='teacher')
    assert response.status_code == 201
    assert recipient_ids(app, response.get_json()['id']) == {data.ids['teacher'], data.ids['teacher2']}


def test_explicit_recipients_must_be_in_school(client, data):
    response = send(client, data, recipients=[data.ids['beta_student']])
    assert response.status_code == 400


def test_branch_targeting(app, client, data, webpush_calls):
    response = send(client, data, schoolBranches=[data.north], targetRole='student')
    assert response.status_code == 201
    body = response.get_json()
    assert recipient_ids(app, body['id']) == {data.ids['north_student']}
    assert body['schoolBranches'] == [{'id': data.north, 'name': 'Alpha North'}]


def test_foreign_branch_rejected(client, data):
    response = send(client, data, schoolBranches=[data.beta])
    assert response.status_code == 400


def test_recipient_sees_and_marks_notification(client, data, webpush_calls):
    notification_id = send(client, data, recipients=[data.ids['student']]).get_json()['id']
    headers = auth(data.tokens['student'])

    listing = client.get('/api/notifications', headers=headers).get_json()
    assert [n['id'] for n in listing] == [notification_id]
    assert listing[0]['isRead'] is False

    seen = client.put(f"/api/notifications/{notification_id}/seen", headers=headers).get_json()
    assert seen['message'] == 'Marked as seen'
    assert seen['notification']['isSeen'] is True
    assert seen['notification']['isRead'] is False

    read = client.put(f"/api/notifications/{notification_id}/read", headers=headers).get_json()
    assert read['message'] == 'Marked as read'
    again = client.put(f"/api/notifications/{notification_id}/read", headers=headers).get_json()
    assert again['message'] == 'Already marked as read'


def test_non_recipient_cannot_read(client, data, webpush_calls):
    notification_id = send(client, data, recipients=[data.ids['student']]).get_json()['id']
    response = client.get(f"/api/notifications/{notification_id}", headers=auth(data.tokens['student2']))
    assert response.status_code == 403
    assert client.get('/api/notifications', headers=auth(data.tokens['student2'])).get_json() == []


def test_list_limit(client, data, webpush_calls):
    for i in range(3):
        send(client, data, title=f"Notice {i}", recipients=[data.ids['student']])
    listing = client.get('/api/notifications?limit=2', headers=auth(data.tokens['student'])).get_json()
    assert [n['title'] for n in listing] == ['Notice 2', 'Notice 1']


def test_sent_notifications_include_counts(client, data, webpush_calls):
    notification_id = send(client, data, recipients=[data.ids['student'], data.ids['student2']]).get_json()['id']
    client.put(f"/api/notifications/{notification_id}/read", headers=auth(data.tokens['student']))

    sent = client.get('/api/notifications/sent', headers=auth(data.tokens['admin'])).get_json()
    assert len(sent) == 1
    assert sent[0]['totalRecipients'] == 2
    assert sent[0]['readCount'] == 1
    assert sent[0]['seenCount'] == 1


def test_sender_sees_recipient_details(client, data, webpush_calls):
    notification_id = send(client, data, recipients=[data.ids['student']]).get_json()['id']
    body = client.get(f"/api/notifications/{notification_id}", headers=auth(data.tokens['admin'])).get_json()
    assert [r['user']['id'] for r in body['recipients']] == [data.ids['student']]


def test_update_and_delete_by_sender(app, client, data, webpush_calls):
    notification_id = send(client, data, token='teacher', recipients=[data.ids['student']]).get_json()['id']

    other = client.put(f"/api/notifications/{notification_id}", headers=auth(data.tokens['teacher2']),
                       json={'title': 'Hijacked'})
    assert other.status_code == 403

    updated = client.put(f"/api/notifications/{notification_id}", headers=auth(data.tokens['teacher']),
                         json={'title': 'Updated title', 'urgent': True})
    assert updated.status_code == 200
    assert updated.get_json()['title'] == 'Updated title'
    assert updated.get_json()['message'] == 'Snow day tomorrow'
    assert updated.get_json()['urgent'] is True

    deleted = client.delete(f"/api/notifications/{notification_id}", headers=auth(data.tokens['admin']))
    assert deleted.status_code == 200
    with app.app_context():
        assert db.session.get(Notification, notification_id) is None
        assert NotificationRecipient.query.filter_by(notification_id=notification_id).count() == 0


def test_notification_push_delivery(client, data, webpush_calls):
    subscribe = client.post('/api/push/subscription', headers=auth(data.tokens['student']),
                            json=subscription_body())
    assert subscribe.status_code == 201

    response = send(client, data, recipients=[data.ids['student']], urgent=True)
    summary = response.get_json()['pushSummary']
    assert summary == {'total': 1, 'successful': 1, 'failed': 0, 'expired': 0}
    assert len(webpush_calls.sent) == 1
    call = webpush_calls.sent[0]
    assert call['claims'] == {'sub': 'mailto:admin@gradebook.test'}
    assert call['headers'] == {'Urgency': 'high'}
    assert '"title": "School closed"' in call['data']
