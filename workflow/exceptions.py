import logging

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.db import IntegrityError
from django.http import Http404
from rest_framework import exceptions, status
from rest_framework.response import Response
from rest_framework.views import set_rollback

logger = logging.getLogger(__name__)


class AppError(exceptions.APIException):
    """Error raised by handlers and services with an explicit HTTP status."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Request could not be processed.'

    def __init__(self, message=None, status_code=None):
        if status_code is not None:
            self.status_code = status_code
        super().__init__(detail=message or self.default_detail)


class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Resource already exists.'


class DicomValidationError(AppError):
    default_detail = 'Invalid DICOM file.'


class EmailDeliveryError(Exception):
    pass


def _error_body(status_code, message, details=None):
    body = {
        'success': False,
        'status': 'fail' if 400 <= status_code < 500 else 'error',
        'error': message,
    }
    if details is not None:
        body['details'] = details
    return body


def _first_message(detail):
    if isinstance(detail, list) and detail:
        return _first_message(detail[0])
    if isinstance(detail, dict) and detail:
        key, value = next(iter(detail.items()))
        message = _first_message(value)
        return message if key == 'non_field_errors' else f"{key}: {message}"
    return str(detail)


def custom_exception_handler(exc, context):
    view = context.get('view')
    view_name = view.__class__.__name__ if view else 'unknown'

    if isinstance(exc, Http404):
        exc = exceptions.NotFound()
    elif isinstance(exc, PermissionDenied):
        exc = exceptions.PermissionDenied()

    if isinstance(exc, exceptions.ValidationError):
        set_rollback()
        return Response(
            _error_body(exc.status_code, _first_message(exc.detail), details=exc.detail),
            status=exc.status_code,
        )

    if isinstance(exc, exceptions.APIException):
        set_rollback()
        headers = {}
        if getattr(exc, 'auth_header', None):
            headers['WWW-Authenticate'] = exc.auth_header
        if getattr(exc, 'wait', None):
            headers['Retry-After'] = str(int(exc.wait))
        if exc.status_code >= 500:
            logger.error(f"{view_name} failed: {exc.detail}")
        return Response(_error_body(exc.status_code, str(exc.detail)), status=exc.status_code, headers=headers)

    if isinstance(exc, IntegrityError):
        set_rollback()
        message = str(exc).lower()
        if 'unique' in message or 'duplicate' in message:
            logger.warning(f"{view_name} unique violation: {exc}")
            return Response(_error_body(409, 'Resource already exists'), status=status.HTTP_409_CONFLICT)
        logger.warning(f"{view_name} constraint violation: {exc}")
        return Response(_error_body(400, 'Invalid reference or missing required field'), status=status.HTTP_400_BAD_REQUEST)

    logger.exception(f"Unhandled error in {view_name}: {exc}")
    set_rollback()
    message = str(exc) if settings.DEBUG else 'Something went wrong'
    return Response(_error_body(500, message), status=status.HTTP_500_INTERNAL_SERVER_ERROR)
