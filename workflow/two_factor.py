"""TOTP two-factor authentication helpers.

Secrets and codes come from pyotp; the provisioning QR code is rendered
with qrcode and returned as a PNG data URL for the dashboard.
"""
import base64
import logging
import secrets
import string
from io import BytesIO

import pyotp
import qrcode
from django.conf import settings
from django.contrib.auth.hashers import check_password, make_password

logger = logging.getLogger(__name__)

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_secret(user):
    secret = pyotp.random_base32()
    otpauth_url = pyotp.TOTP(secret).provisioning_uri(
        name=user.email, issuer_name=settings.TWO_FACTOR_ISSUER
    )
    return {
        'secret': secret,
        'otpauth_url': otpauth_url,
        'qr_code': qr_data_url(otpauth_url),
    }


def qr_data_url(data):
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    qr_img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    qr_img.save(buffer, format='PNG')
    return 'data:image/png;base64,' + base64.b64encode(buffer.getvalue()).decode('ascii')


def verify_totp(secret, token):
    if not secret or not token:
        return False
    token = str(token).strip().replace(' ', '')
    if len(token) != 6 or not token.isdigit():
        return False
    return pyotp.TOTP(secret).verify(token, valid_window=1)


def generate_backup_codes(count=BACKUP_CODE_COUNT):
    return [
        ''.join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def hash_backup_codes(codes):
    return [make_password(code) for code in codes]


def consume_backup_code(profile, code):
    """Check ``code`` against the stored hashes and burn it on a match."""
    code = str(code or '').strip().upper()
    if len(code) != BACKUP_CODE_LENGTH:
        return False
    remaining = list(profile.backup_codes or [])
    for index, hashed in enumerate(remaining):
        if check_password(code, hashed):
            del remaining[index]
            profile.backup_codes = remaining
            profile.save(update_fields=['backup_codes', 'updated_at'])
            logger.info(f"Backup code used by user {profile.user_id}; {len(remaining)} left")
            return True
    return False


def verify_two_factor(profile, token):
    if not profile.two_factor_enabled or not profile.two_factor_secret:
        return False
    token = str(token or '').strip()
    if len(token) == 6 and token.isdigit():
        return verify_totp(profile.two_factor_secret, token)
    return consume_backup_code(profile, token)


def enable(profile, secret, token):
    """Switch 2FA on after the user proves they hold ``secret``; returns the plain backup codes."""
    if not verify_totp(secret, token):
        return None
    codes = generate_backup_codes()
    profile.two_factor_secret = secret
    profile.two_factor_enabled = True
    profile.backup_codes = hash_backup_codes(codes)
    profile.save(update_fields=['two_factor_secret', 'two_factor_enabled', 'backup_codes', 'updated_at'])
    return codes


def disable(profile, token):
    if not verify_two_factor(profile, token):
        return False
    profile.two_factor_secret = ''
    profile.two_factor_enabled = False
    profile.backup_codes = []
    profile.save(update_fields=['two_factor_secret', 'two_factor_enabled', 'backup_codes', 'updated_at'])
    return True


def regenerate_backup_codes(profile, token):
    if not verify_totp(profile.two_factor_secret, token):
        return None
    codes = generate_backup_codes()
    profile.backup_codes = hash_backup_codes(codes)
    profile.save(update_fields=['backup_codes', 'updated_at'])
    return codes
