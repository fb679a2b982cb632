from datetime import timedelta

import pyotp
import pytest
from django.core import mail
from django.utils import timezone

from workflow import emails
from workflow.account_views import AuthRateThrottle, _send_verification
from workflow.authentication import TokenError, authenticate_token, issue_tokens
from workflow.models import AuditLog, UserProfile
from workflow.two_factor import hash_backup_codes

PASSWORD = 'password123'


def register_payload(**overrides):
    payload = {
        'email': 'New.User@Example.test',
        'password': 'a-long-password',
        'first_name': 'New',
        'last_name': 'User',
        'organization_code': 'gen',
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def captured_tokens(monkeypatch):
    sent = {}

    def capture_verification(user, token):
        sent['verification'] = token

    def capture_reset(user, token):
        sent['reset'] = token

    monkeypatch.setattr(emails, 'send_verification_email', capture_verification)
    monkeypatch.setattr(emails, 'send_password_reset_email', capture_reset)
    return sent


def login(client, email, password=PASSWORD, **extra):
    return client.post('/api/auth/login/', {'email': email, 'password': password, **extra}, format='json')


class TestRegister:
    def test_register_creates_unverified_member(self, api_client, organization):
        response = api_client.post('/api/auth/register/', register_payload(), format='json')

        assert response.status_code == 201
        user = response.data['user']
        assert user['email'] == 'new.user@example.test'
        assert user['profile']['role'] == UserProfile.ROLE_VIEWER
        assert user['profile']['organization'] == organization.id
        assert user['profile']['is_verified'] is False
        assert len(mail.outbox) == 1
        assert mail.outbox[0].subject == 'Verify Your Account'

    def test_duplicate_email_conflicts(self, api_client, organization):
        api_client.post('/api/auth/register/', register_payload(), format='json')
        response = api_client.post('/api/auth/register/', register_payload(), format='json')

        assert response.status_code == 409
        assert response.data == {'success': False, 'status': 'fail', 'error': 'User already exists'}

    def test_unknown_organization_code(self, api_client, organization):
        response = api_client.post('/api/auth/register/', register_payload(organization_code='NOPE'), format='json')

        assert response.status_code == 400
        assert response.data['error'] == 'organization_code: Invalid organization code'

    def test_cannot_self_register_as_admin(self, api_client, organization):
        response = api_client.post('/api/auth/register/', register_payload(role='admin'), format='json')

        assert response.status_code == 400
        assert 'role' in response.data['details']


class TestVerifyEmail:
    def test_verification_token_verifies_account(self, api_client, captured_tokens, organization):
        api_client.post('/api/auth/register/', register_payload(), format='json')

        response = api_client.post('/api/auth/verify-email/', {'token': captured_tokens['verification']}, format='json')

        assert response.status_code == 200
        profile = UserProfile.objects.get(user__email='new.user@example.test')
        assert profile.is_verified is True
        assert profile.verification_token == ''

    def test_stored_token_is_hashed(self, make_user):
        user = make_user(verified=False)
        token = _send_verification(user)
        user.profile.refresh_from_db()
        assert user.profile.verification_token
        assert user.profile.verification_token != token

    def test_expired_token_rejected(self, api_client, make_user):
        user = make_user(verified=False)
        token = _send_verification(user)
        UserProfile.objects.filter(user=user).update(verification_token_expires=timezone.now() - timedelta(minutes=1))

        response = api_client.post('/api/auth/verify-email/', {'token': token}, format='json')

        assert response.status_code == 400
        assert response.data['error'] == 'Invalid or expired verification token'


class TestLogin:
    def test_login_returns_tokens_and_user(self, api_client, radiologist):
        response = login(api_client, radiologist.email)

        assert response.status_code == 200
        assert response.data['success'] is True
        assert response.data['token']
        assert response.data['refresh_token']
        assert response.data['user']['email'] == radiologist.email
        assert AuditLog.objects.filter(action='login', user=radiologist).exists()

        radiologist.refresh_from_db()
        assert radiologist.last_login is not None

    def test_wrong_password(self, api_client, radiologist):
        response = login(api_client, radiologist.email, password='wrong-password')

        assert response.status_code == 401
        assert response.data['error'] == 'Invalid credentials'
        assert AuditLog.objects.filter(action='login_failed', user=radiologist).exists()

    def test_unknown_email(self, api_client, db):
        response = login(api_client, 'nobody@example.test')
        assert response.status_code == 401
        assert response.data['error'] == 'Invalid credentials'

    def test_unverified_user_cannot_login(self, api_client, make_user):
        user = make_user(verified=False)
        response = login(api_client, user.email)

        assert response.status_code == 401
        assert response.data['error'] == 'Please verify your email before logging in'

    def test_deleted_user_cannot_login(self, api_client, technician):
        UserProfile.objects.filter(user=technician).update(deleted_at=timezone.now())
        assert login(api_client, technician.email).status_code == 401

    def test_throttled_after_rate(self, api_client, radiologist, monkeypatch):
        monkeypatch.setattr(AuthRateThrottle, 'THROTTLE_RATES', {'auth': '2/minute'})

        for _ in range(2):
            login(api_client, radiologist.email, password='wrong-password')
        response = login(api_client, radiologist.email)

        assert response.status_code == 429
        assert response.data['success'] is False
        assert 'Retry-After' in response


class TestTwoFactorLogin:
    @pytest.fixture
    def secret(self, radiologist):
        secret = pyotp.random_base32()
        UserProfile.objects.filter(user=radiologist).update(
            two_factor_enabled=True,
            two_factor_secret=secret,
            backup_codes=hash_backup_codes(['ABCD1234']),
        )
        return secret

    def test_password_alone_requires_second_factor(self, api_client, radiologist, secret):
        response = login(api_client, radiologist.email)

        assert response.status_code == 202
        assert response.data['requires_2fa'] is True
        assert 'token' not in response.data

    def test_totp_code_completes_login(self, api_client, radiologist, secret):
        response = login(api_client, radiologist.email, two_factor_token=pyotp.TOTP(secret).now())
        assert response.status_code == 200
        assert response.data['token']

    def test_bad_code_rejected(self, api_client, radiologist, secret):
        response = login(api_client, radiologist.email, two_factor_token='000000x')
        assert response.status_code == 401
        assert response.data['error'] == 'Invalid two-factor authentication code'

    def test_backup_code_is_single_use(self, api_client, radiologist, secret):
        assert login(api_client, radiologist.email, two_factor_token='abcd1234').status_code == 200
        assert login(api_client, radiologist.email, two_factor_token='ABCD1234').status_code == 401
        radiologist.profile.refresh_from_db()
        assert radiologist.profile.backup_codes == []


class TestTokens:
    def test_me_requires_token(self, api_client, db):
        response = api_client.get('/api/auth/me/')
        assert response.status_code == 401
        assert response.data['status'] == 'fail'

    def test_garbage_token(self, api_client, db):
        api_client.credentials(HTTP_AUTHORIZATION='Bearer not-a-jwt')
        response = api_client.get('/api/auth/me/')
        assert response.status_code == 401
        assert response.data['error'] == 'Invalid token'

    def test_me(self, client_for, manager):
        response = client_for(manager).get('/api/auth/me/')
        assert response.status_code == 200
        assert response.data['user']['profile']['role'] == 'manager'

    def test_refresh_issues_new_access_token(self, api_client, radiologist):
        tokens = issue_tokens(radiologist)

        response = api_client.post('/api/auth/refresh/', {'refresh_token': tokens['refresh_token']}, format='json')

        assert response.status_code == 200
        api_client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['token']}")
        assert api_client.get('/api/auth/me/').status_code == 200

    def test_refresh_rejects_access_token(self, api_client, radiologist):
        tokens = issue_tokens(radiologist)
        response = api_client.post('/api/auth/refresh/', {'refresh_token': tokens['token']}, format='json')
        assert response.status_code == 401
        assert response.data['error'] == 'Invalid token type'

    def test_refresh_requires_token(self, api_client, db):
        response = api_client.post('/api/auth/refresh/', {}, format='json')
        assert response.status_code == 401
        assert response.data['error'] == 'Refresh token required'

    def test_logout_revokes_both_tokens(self, api_client, radiologist):
        tokens = issue_tokens(radiologist)
        api_client.credentials(HTTP_AUTHORIZATION=f"Bearer {tokens['token']}")

        response = api_client.post('/api/auth/logout/', {'refresh_token': tokens['refresh_token']}, format='json')
        assert response.status_code == 200

        me = api_client.get('/api/auth/me/')
        assert me.status_code == 401
        assert me.data['error'] == 'Token has been revoked'

        api_client.credentials()
        refreshed = api_client.post('/api/auth/refresh/', {'refresh_token': tokens['refresh_token']}, format='json')
        assert refreshed.status_code == 401

    def test_inactive_user_token_rejected(self, client_for, viewer):
        client = client_for(viewer)
        viewer.is_active = False
        viewer.save()
        assert client.get('/api/auth/me/').status_code == 401


class TestPasswordChange:
    def test_same_second_tokens_compare_sub_second(self, radiologist):
        changed_at = timezone.now().replace(microsecond=600000)
        UserProfile.objects.filter(user=radiologist).update(password_changed_at=changed_at)
        radiologist.refresh_from_db()
        before = issue_tokens(radiologist, issued_at=changed_at.replace(microsecond=200000))
        after = issue_tokens(radiologist, issued_at=changed_at.replace(microsecond=900000))

        with pytest.raises(TokenError):
            authenticate_token(before['token'])
        user, _ = authenticate_token(after['token'])
        assert user == radiologist

    def test_change_password_invalidates_older_tokens(self, client_for, radiologist):
        earlier = issue_tokens(radiologist, issued_at=timezone.now() - timedelta(minutes=2))
        client = client_for(radiologist, issued_at=timezone.now() - timedelta(minutes=1))

        response = client.post(
            '/api/users/change-password/',
            {'current_password': PASSWORD, 'new_password': 'another-password'},
            format='json',
        )

        assert response.status_code == 200
        assert response.data['token']
        radiologist.refresh_from_db()
        assert radiologist.check_password('another-password')

        stale = client_for(None)
        stale.credentials(HTTP_AUTHORIZATION=f"Bearer {earlier['token']}")
        rejected = stale.get('/api/auth/me/')
        assert rejected.status_code == 401
        assert rejected.data['error'] == 'Password recently changed. Please log in again.'

        fresh = client_for(None)
        fresh.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['token']}")
        assert fresh.get('/api/auth/me/').status_code == 200

    def test_wrong_current_password(self, client_for, radiologist):
        response = client_for(radiologist).post(
            '/api/users/change-password/',
            {'current_password': 'nope-nope', 'new_password': 'another-password'},
            format='json',
        )
        assert response.status_code == 400
        assert response.data['error'] == 'Current password is incorrect'


class TestPasswordReset:
    def test_forgot_and_reset(self, api_client, captured_tokens, technician):
        response = api_client.post('/api/auth/forgot-password/', {'email': technician.email.upper()}, format='json')
        assert response.status_code == 200

        reset = api_client.post(
            '/api/auth/reset-password/',
            {'token': captured_tokens['reset'], 'password': 'brand-new-password'},
            format='json',
        )
        assert reset.status_code == 200
        assert login(api_client, technician.email, password='brand-new-password').status_code == 200
        assert AuditLog.objects.filter(action='password_reset', user=technician).exists()

        reused = api_client.post(
            '/api/auth/reset-password/',
            {'token': captured_tokens['reset'], 'password': 'yet-another-password'},
            format='json',
        )
        assert reused.status_code == 400

    def test_unknown_email_gives_same_answer(self, api_client, captured_tokens, db):
        response = api_client.post('/api/auth/forgot-password/', {'email': 'ghost@example.test'}, format='json')
        assert response.status_code == 200
        assert 'reset' not in captured_tokens


class TestTwoFactorSetup:
    def test_setup_enable_disable(self, client_for, radiologist):
        client = client_for(radiologist)

        setup = client.post('/api/users/2fa/setup/', {}, format='json')
        assert setup.status_code == 200
        assert setup.data['qr_code'].startswith('data:image/png;base64,')
        totp = pyotp.TOTP(setup.data['secret'])

        assert client.post('/api/users/2fa/enable/', {'token': '123'}, format='json').status_code == 400
        enabled = client.post('/api/users/2fa/enable/', {'token': totp.now()}, format='json')
        assert enabled.status_code == 200
        assert len(enabled.data['backup_codes']) == 10
        radiologist.profile.refresh_from_db()
        assert radiologist.profile.two_factor_enabled is True

        again = client.post('/api/users/2fa/setup/', {}, format='json')
        assert again.status_code == 400

        regenerated = client.post('/api/users/2fa/backup-codes/', {'token': totp.now()}, format='json')
        assert regenerated.status_code == 200
        assert set(regenerated.data['backup_codes']).isdisjoint(enabled.data['backup_codes'])

        disabled = client.post('/api/users/2fa/disable/', {'token': totp.now()}, format='json')
        assert disabled.status_code == 200
        radiologist.profile.refresh_from_db()
        assert radiologist.profile.two_factor_enabled is False
        assert radiologist.profile.two_factor_secret == ''

    def test_enable_without_setup(self, client_for, radiologist):
        response = client_for(radiologist).post('/api/users/2fa/enable/', {'token': '123456'}, format='json')
        assert response.status_code == 400
        assert response.data['error'] == 'Run two-factor setup first'
