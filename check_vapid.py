#!/usr/bin/env python3
"""
Checks the VAPID settings used for web push.

Run directly (``python check_vapid.py``) or through ``flask check-vapid``.
Exits with status 1 when the keys can't be used to sign a push request.
"""
import sys

from py_vapid import Vapid

from push_service import validate_vapid_settings, vapid_subject


def check_vapid(email, public_key, private_key, echo=print):
    problems = validate_vapid_settings(email, public_key, private_key)
    if problems:
        for problem in problems:
            echo(f"❌ {problem}")
        return False

    try:
        vapid = Vapid.from_string(private_key=private_key)
        headers = vapid.sign({'sub': vapid_subject(email), 'aud': 'https://fcm.googleapis.com'})
    except Exception as e:
        echo(f"❌ VAPID_PRIVATE_KEY can't sign a push request: {e}")
        return False

    if 'Authorization' not in headers and 'authorization' not in headers:
        echo("❌ Signing did not produce an Authorization header")
        return False

    echo(f"✅ VAPID keys are valid (subject {vapid_subject(email)})")
    return True


def main():
    from config import get_config
    config = get_config()
    ok = check_vapid(config.VAPID_EMAIL, config.VAPID_PUBLIC_KEY, config.VAPID_PRIVATE_KEY)
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
