import json
import logging
import re

from django.conf import settings
from django.http.request import RawPostDataException

from .models import AuditLog

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ('password', 'token', 'secret', 'key', 'auth')
SENSITIVE_HEADERS = ('authorization', 'cookie', 'x-api-key')
RECORDED_HEADERS = ('user-agent', 'content-type', 'referer') + SENSITIVE_HEADERS
SKIP_PREFIXES = ('/health', '/api/auth/refresh', '/api/notifications', '/ws/')
REDACTED = '[REDACTED]'

RESOURCE_ID_RE = re.compile(
    r'^(\d+|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$', re.IGNORECASE
)


def redact(value):
    if isinstance(value, dict):
        return {
            key: REDACTED if any(word in str(key).lower() for word in SENSITIVE_KEYS) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def redact_headers(request):
    headers = {}
    for name in RECORDED_HEADERS:
        value = request.headers.get(name)
        if value is None:
            continue
        headers[name] = REDACTED if name in SENSITIVE_HEADERS else value
    return headers


def should_audit(request):
    if not settings.ENABLE_AUDIT_LOG:
        return False
    path = request.path
    if any(path.startswith(prefix) for prefix in SKIP_PREFIXES):
        return False
    if request.method in ('GET', 'HEAD', 'OPTIONS'):
        return path.startswith('/admin/')
    return path.startswith('/api/') or path.startswith('/admin/')


def parse_resource(path):
    segments = [segment for segment in path.split('/') if segment]
    resource_type = ''
    resource_id = ''
    if segments and segments[0] == 'api' and len(segments) > 1:
        resource_type = segments[1]
    elif segments:
        resource_type = segments[0]
    for segment in segments:
        if RESOURCE_ID_RE.match(segment):
            resource_id = segment
            break
    return resource_type, resource_id


def client_ip(request):
    forwarded = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def read_json_body(request):
    if 'application/json' not in (request.content_type or ''):
        return None
    try:
        body = request.body
    except RawPostDataException as e:
        logger.debug(f"Audit could not read request body: {e}")
        return None
    if not body:
        return None
    try:
        return redact(json.loads(body))
    except ValueError:
        return None


def record_audit(action, user=None, organization=None, request=None, resource_type='',
                 resource_id='', old_values=None, new_values=None, metadata=None):
    """Write one audit row. Failures are logged and swallowed so auditing never breaks a request."""
    try:
        profile = getattr(user, 'profile', None) if user is not None else None
        if organization is None and profile is not None:
            organization = profile.organization
        AuditLog.objects.create(
            organization=organization,
            user=user if user is not None and user.is_authenticated else None,
            action=action[:255],
            resource_type=resource_type,
            resource_id=str(resource_id or ''),
            old_values=redact(old_values) if old_values is not None else None,
            new_values=redact(new_values) if new_values is not None else None,
            ip_address=client_ip(request) if request is not None else None,
            user_agent=(request.headers.get('user-agent', '') if request is not None else '')[:500],
            metadata=metadata or {},
        )
    except Exception as e:
        logger.error(f"Failed to write audit log for {action}: {e}")
