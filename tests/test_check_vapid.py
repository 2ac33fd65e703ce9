from check_vapid import check_vapid


def test_reports_every_problem():
    messages = []
    assert check_vapid(None, None, 'too-short', echo=messages.append) is False
    assert messages == [
        '❌ VAPID_EMAIL is not set',
        '❌ VAPID_PUBLIC_KEY is not set',
        '❌ VAPID_PRIVATE_KEY must be a 43 character url-safe base64 key',
    ]


def test_rejects_malformed_email():
    messages = []
    assert check_vapid('not-an-email', 'B' + 'Q' * 86, 'p' * 43, echo=messages.append) is False
    assert messages == ['❌ VAPID_EMAIL must be a valid e-mail address']
