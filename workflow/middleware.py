import logging
import time

from .audit import (
    client_ip,
    parse_resource,
    read_json_body,
    record_audit,
    redact_headers,
    should_audit,
)

logger = logging.getLogger(__name__)


class DisableCSRFForAPIMiddleware:
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if request.path.startswith('/api/'):
            setattr(request, '_dont_enforce_csrf_checks', True)

        response = self.get_response(request)
        return response


class RequestLoggingMiddleware:
    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        started = time.monotonic()
        response = self.get_response(request)

        if request.path.startswith('/api/'):
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"{request.method} {request.path} {response.status_code} {duration_ms}ms ip={client_ip(request)}")
            if response.status_code in [401, 403]:
                logger.warning(f"Auth failed: {response.status_code} for {request.path}")

        return response


class AuditLogMiddleware:
    """Records mutating calls (and admin page views) into the audit table."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if not should_audit(request):
            return self.get_response(request)

        started = time.monotonic()
        body = read_json_body(request)
        response = self.get_response(request)
        duration_ms = int((time.monotonic() - started) * 1000)

        user = getattr(request, 'audit_user', None)
        if user is None and getattr(request, 'user', None) is not None and request.user.is_authenticated:
            user = request.user

        resource_type, resource_id = parse_resource(request.path)
        record_audit(
            f"{request.method} {request.path}",
            user=user,
            request=request,
            resource_type=resource_type,
            resource_id=resource_id,
            new_values=body,
            metadata={
                'method': request.method,
                'path': request.path,
                'query': request.GET.dict(),
                'status_code': response.status_code,
                'duration_ms': duration_ms,
                'headers': redact_headers(request),
            },
        )
        return response
