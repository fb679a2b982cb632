import logging
import uuid
from datetime import timedelta

import jwt
from django.conf import settings
from django.contrib.auth.models import User
from django.core.cache import cache
from django.utils import timezone
from rest_framework import authentication, exceptions

logger = logging.getLogger(__name__)

ACCESS = 'access'
REFRESH = 'refresh'

REVOKED_KEY = 'jwt:revoked:{jti}'
SESSION_KEY = 'jwt:session:{jti}'


class TokenError(Exception):
    pass


def _encode(user, token_type, ttl_minutes, issued_at, session_id):
    profile = user.profile
    payload = {
        'id': user.id,
        'email': user.email,
        'role': profile.role,
        'organization_id': profile.organization_id,
        'type': token_type,
        'jti': uuid.uuid4().hex,
        'sid': session_id,
        'iat': issued_at,
        'issued_at': issued_at.timestamp(),
        'exp': issued_at + timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM), payload


def issue_tokens(user, issued_at=None):
    """Return a fresh access/refresh pair and open a session for the refresh token."""
    issued_at = issued_at or timezone.now()
    session_id = uuid.uuid4().hex
    access, _ = _encode(user, ACCESS, settings.JWT_ACCESS_TTL_MINUTES, issued_at, session_id)
    refresh, _ = _encode(user, REFRESH, settings.JWT_REFRESH_TTL_MINUTES, issued_at, session_id)
    cache.set(
        SESSION_KEY.format(jti=session_id),
        {'user_id': user.id, 'created_at': issued_at.isoformat()},
        timeout=settings.JWT_REFRESH_TTL_MINUTES * 60,
    )
    return {'token': access, 'refresh_token': refresh, 'expires_in': settings.JWT_ACCESS_TTL_MINUTES * 60}


def issue_access_token(user, session_id):
    token, _ = _encode(user, ACCESS, settings.JWT_ACCESS_TTL_MINUTES, timezone.now(), session_id)
    return token


def decode_token(token, expected_type=ACCESS):
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenError('Token expired')
    except jwt.InvalidTokenError:
        raise TokenError('Invalid token')
    if payload.get('type') != expected_type:
        raise TokenError('Invalid token type')
    if cache.get(REVOKED_KEY.format(jti=payload['jti'])):
        raise TokenError('Token has been revoked')
    if expected_type == REFRESH and not cache.get(SESSION_KEY.format(jti=payload.get('sid'))):
        raise TokenError('Session has ended')
    return payload


def user_from_payload(payload):
    user = (
        User.objects.select_related('profile', 'profile__organization')
        .filter(id=payload.get('id'), is_active=True, profile__deleted_at__isnull=True)
        .first()
    )
    if user is None:
        raise TokenError('User no longer exists')
    changed_at = user.profile.password_changed_at
    # 'iat' is whole seconds, 'issued_at' keeps the sub-second part
    issued_at = payload.get('issued_at', payload['iat'])
    if changed_at and issued_at < changed_at.timestamp():
        raise TokenError('Password recently changed. Please log in again.')
    return user


def authenticate_token(token):
    payload = decode_token(token, ACCESS)
    return user_from_payload(payload), payload


def revoke_token(payload):
    remaining = int(payload['exp'] - timezone.now().timestamp())
    if remaining > 0:
        cache.set(REVOKED_KEY.format(jti=payload['jti']), True, timeout=remaining)


def end_session(payload):
    revoke_token(payload)
    cache.delete(SESSION_KEY.format(jti=payload.get('sid')))


class JWTAuthentication(authentication.BaseAuthentication):
    keyword = 'Bearer'

    def authenticate(self, request):
        header = authentication.get_authorization_header(request).split()
        if not header or header[0].lower() != self.keyword.lower().encode():
            return None
        if len(header) != 2:
            raise exceptions.AuthenticationFailed('Invalid authorization header')
        try:
            token = header[1].decode()
            user, payload = authenticate_token(token)
        except UnicodeError:
            raise exceptions.AuthenticationFailed('Invalid token')
        except TokenError as e:
            logger.info(f"Rejected token for {request.path}: {e}")
            raise exceptions.AuthenticationFailed(str(e))
        request._request.audit_user = user
        return user, payload

    def authenticate_header(self, request):
        return self.keyword
