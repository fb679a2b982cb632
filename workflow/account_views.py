import hashlib
import logging
import secrets
from datetime import timedelta

from django.conf import settings
from django.contrib.auth import authenticate
from django.contrib.auth.models import User, update_last_login
from django.core.cache import cache
from django.db import transaction
from django.db.models import Avg, Count, F, Q
from django.utils import timezone
from rest_framework import exceptions, mixins, status, viewsets
from rest_framework.decorators import action, api_view, permission_classes, throttle_classes
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.throttling import SimpleRateThrottle

from . import billing, dicom, emails, two_factor
from .audit import record_audit
from .authentication import (
    REFRESH,
    TokenError,
    decode_token,
    end_session,
    issue_access_token,
    issue_tokens,
    revoke_token,
    user_from_payload,
)
from .exceptions import AppError, Conflict, EmailDeliveryError
from .models import AuditLog, Invoice, Notification, Organization, Report, Study, UserProfile
from .pagination import StandardPagination
from .permissions import (
    AdminOrManagerPermission,
    AdminPermission,
    IsAuthenticated,
    IsSuperUser,
    can_access_user,
    get_profile,
)
from .serializers import (
    AuditLogSerializer,
    ChangePasswordSerializer,
    InvoiceSerializer,
    LoginSerializer,
    NotificationSerializer,
    OrganizationSerializer,
    OrganizationUpdateSerializer,
    PaymentSerializer,
    RegisterSerializer,
    ResetPasswordSerializer,
    TwoFactorTokenSerializer,
    UserCreateSerializer,
    UserSerializer,
    UserSummarySerializer,
    UserUpdateSerializer,
)

logger = logging.getLogger(__name__)

VERIFICATION_TOKEN_TTL = timedelta(days=1)
RESET_TOKEN_TTL = timedelta(hours=1)
PENDING_2FA_KEY = '2fa:pending:{user_id}'
PENDING_2FA_TTL = 10 * 60


class AuthRateThrottle(SimpleRateThrottle):
    scope = 'auth'

    def get_cache_key(self, request, view):
        return self.cache_format % {'scope': self.scope, 'ident': self.get_ident(request)}


def hash_token(token):
    return hashlib.sha256(token.encode()).hexdigest()


def new_token():
    token = secrets.token_urlsafe(32)
    return token, hash_token(token)


def _send_verification(user):
    token, token_hash = new_token()
    profile = user.profile
    profile.verification_token = token_hash
    profile.verification_token_expires = timezone.now() + VERIFICATION_TOKEN_TTL
    profile.save(update_fields=['verification_token', 'verification_token_expires', 'updated_at'])
    try:
        emails.send_verification_email(user, token)
    except EmailDeliveryError:
        logger.warning(f"Verification email to {user.email} was not delivered")
    return token


def _set_password(user, password):
    user.set_password(password)
    user.save(update_fields=['password'])
    profile = user.profile
    profile.password_changed_at = timezone.now()
    profile.save(update_fields=['password_changed_at', 'updated_at'])


# ---------------------------------------------------------------------------
# auth/
# ---------------------------------------------------------------------------

@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AuthRateThrottle])
def register(request):
    serializer = RegisterSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    if User.objects.filter(username=data['email']).exists():
        raise Conflict('User already exists')

    with transaction.atomic():
        user = User.objects.create_user(
            username=data['email'],
            email=data['email'],
            password=data['password'],
            first_name=data['first_name'],
            last_name=data['last_name'],
        )
        UserProfile.objects.create(
            user=user,
            organization=data['organization_code'],
            role=data['role'],
            password_changed_at=timezone.now(),
        )
    _send_verification(user)
    logger.info(f"User registered: {user.email} in {user.profile.organization.code}")
    return Response(
        {
            'success': True,
            'message': 'Registration successful. Please check your email to verify your account.',
            'user': UserSerializer(user).data,
        },
        status=status.HTTP_201_CREATED,
    )


@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AuthRateThrottle])
def login(request):
    serializer = LoginSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    email = serializer.validated_data['email'].strip().lower()
    password = serializer.validated_data['password']

    user = authenticate(request, username=email, password=password)
    profile = get_profile(user) if user is not None else None
    if user is None or profile is None or profile.deleted_at is not None:
        known = User.objects.filter(username=email).first()
        record_audit('login_failed', user=known, request=request, resource_type='auth',
                     metadata={'email': email})
        logger.warning(f"Login failed for {email}")
        raise exceptions.AuthenticationFailed('Invalid credentials')

    if not profile.is_verified:
        raise exceptions.AuthenticationFailed('Please verify your email before logging in')

    if profile.two_factor_enabled:
        code = serializer.validated_data.get('two_factor_token')
        if not code:
            return Response(
                {'success': True, 'requires_2fa': True, 'message': 'Two-factor authentication required'},
                status=status.HTTP_202_ACCEPTED,
            )
        if not two_factor.verify_two_factor(profile, code):
            record_audit('login_failed', user=user, request=request, resource_type='auth',
                         metadata={'reason': 'invalid_2fa'})
            raise exceptions.AuthenticationFailed('Invalid two-factor authentication code')

    update_last_login(None, user)
    tokens = issue_tokens(user)
    record_audit('login', user=user, request=request, resource_type='auth', resource_id=user.id)
    logger.info(f"User logged in: {user.email}")
    return Response({'success': True, **tokens, 'user': UserSerializer(user).data})


@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AuthRateThrottle])
def refresh(request):
    token = request.data.get('refresh_token')
    if not token:
        raise AppError('Refresh token required', status_code=401)
    try:
        payload = decode_token(token, REFRESH)
        user = user_from_payload(payload)
    except TokenError as e:
        raise exceptions.AuthenticationFailed(str(e))
    return Response({
        'success': True,
        'token': issue_access_token(user, payload['sid']),
        'expires_in': settings.JWT_ACCESS_TTL_MINUTES * 60,
    })


@api_view(['POST'])
def logout(request):
    end_session(request.auth)
    refresh_token = request.data.get('refresh_token')
    if refresh_token:
        try:
            revoke_token(decode_token(refresh_token, REFRESH))
        except TokenError as e:
            logger.info(f"Refresh token not revoked on logout: {e}")
    record_audit('logout', user=request.user, request=request, resource_type='auth', resource_id=request.user.id)
    return Response({'success': True, 'message': 'Logged out successfully'})


@api_view(['GET'])
def me(request):
    return Response({'success': True, 'user': UserSerializer(request.user).data})


@api_view(['POST'])
@permission_classes([AllowAny])
def verify_email(request):
    token = request.data.get('token')
    if not token:
        raise AppError('Verification token required')
    profile = UserProfile.objects.filter(
        verification_token=hash_token(token),
        verification_token_expires__gt=timezone.now(),
    ).select_related('user').first()
    if profile is None:
        raise AppError('Invalid or expired verification token')
    profile.is_verified = True
    profile.verification_token = ''
    profile.verification_token_expires = None
    profile.save(update_fields=['is_verified', 'verification_token', 'verification_token_expires', 'updated_at'])
    logger.info(f"Email verified for {profile.user.email}")
    return Response({'success': True, 'message': 'Email verified successfully'})


@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AuthRateThrottle])
def forgot_password(request):
    email = str(request.data.get('email', '')).strip().lower()
    if not email:
        raise AppError('Email is required')
    user = User.objects.filter(
        username=email, is_active=True, profile__deleted_at__isnull=True
    ).select_related('profile').first()
    if user is not None:
        token, token_hash = new_token()
        profile = user.profile
        profile.reset_token = token_hash
        profile.reset_token_expires = timezone.now() + RESET_TOKEN_TTL
        profile.save(update_fields=['reset_token', 'reset_token_expires', 'updated_at'])
        try:
            emails.send_password_reset_email(user, token)
        except EmailDeliveryError:
            logger.warning(f"Password reset email to {email} was not delivered")
    return Response({
        'success': True,
        'message': 'If an account exists with this email, a password reset link has been sent.',
    })


@api_view(['POST'])
@permission_classes([AllowAny])
@throttle_classes([AuthRateThrottle])
def reset_password(request):
    serializer = ResetPasswordSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    profile = UserProfile.objects.filter(
        reset_token=hash_token(serializer.validated_data['token']),
        reset_token_expires__gt=timezone.now(),
    ).select_related('user').first()
    if profile is None:
        raise AppError('Invalid or expired reset token')
    user = profile.user
    _set_password(user, serializer.validated_data['password'])
    profile.refresh_from_db()
    profile.reset_token = ''
    profile.reset_token_expires = None
    profile.save(update_fields=['reset_token', 'reset_token_expires', 'updated_at'])
    record_audit('password_reset', user=user, request=request, resource_type='auth', resource_id=user.id)
    return Response({'success': True, 'message': 'Password reset successfully'})


# ---------------------------------------------------------------------------
# users/
# ---------------------------------------------------------------------------

class UserViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    serializer_class = UserSerializer

    def get_permissions(self):
        if self.action == 'list':
            return [IsAuthenticated(), AdminOrManagerPermission()]
        if self.action in ('create', 'destroy'):
            return [IsAuthenticated(), AdminPermission()]
        return [IsAuthenticated()]

    def get_queryset(self):
        profile = self.request.user.profile
        queryset = User.objects.filter(
            profile__organization=profile.organization,
            profile__deleted_at__isnull=True,
        ).select_related('profile', 'profile__organization')
        if self.action == 'list':
            if profile.role == UserProfile.ROLE_MANAGER:
                queryset = queryset.exclude(profile__role=UserProfile.ROLE_ADMIN)
            params = self.request.query_params
            if params.get('role'):
                queryset = queryset.filter(profile__role=params['role'])
            if params.get('status') == 'active':
                queryset = queryset.filter(is_active=True)
            elif params.get('status') == 'inactive':
                queryset = queryset.filter(is_active=False)
            search = params.get('search')
            if search:
                queryset = queryset.filter(
                    Q(first_name__icontains=search) | Q(last_name__icontains=search) | Q(email__icontains=search)
                )
        return queryset.order_by('-date_joined')

    def get_object(self):
        user = super().get_object()
        if not can_access_user(self.request.user, user):
            raise PermissionDenied('Access denied to this user')
        return user

    def retrieve(self, request, *args, **kwargs):
        return Response({'success': True, 'user': UserSerializer(self.get_object()).data})

    def create(self, request, *args, **kwargs):
        serializer = UserCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        if User.objects.filter(username=data['email']).exists():
            raise Conflict('User already exists')

        generated = 'password' not in data
        password = data.get('password') or secrets.token_urlsafe(12)
        with transaction.atomic():
            user = User.objects.create_user(
                username=data['email'],
                email=data['email'],
                password=password,
                first_name=data['first_name'],
                last_name=data['last_name'],
            )
            UserProfile.objects.create(
                user=user,
                organization=request.user.profile.organization,
                role=data['role'],
                phone=data.get('phone', ''),
                specialization=data.get('specialization', ''),
                credentials=data.get('credentials') or {},
                is_verified=True,
                password_changed_at=timezone.now(),
            )
        try:
            emails.send_welcome_email(user, temporary_password=password if generated else None)
        except EmailDeliveryError:
            logger.warning(f"Welcome email to {user.email} was not delivered")
        logger.info(f"User {user.email} created by {request.user.email}")
        return Response({'success': True, 'user': UserSerializer(user).data}, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        user = self.get_object()
        serializer = UserUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        profile = user.profile
        actor = request.user.profile

        if ('role' in data or 'is_active' in data) and not actor.is_admin:
            raise PermissionDenied('Only admins can change role or account status')
        if user.id == request.user.id and data.get('is_active') is False:
            raise AppError('You cannot deactivate your own account')

        email_changed = 'email' in data and data['email'] != user.email
        if email_changed and User.objects.filter(username=data['email']).exclude(id=user.id).exists():
            raise Conflict('Email already in use')

        with transaction.atomic():
            for field in ('first_name', 'last_name', 'is_active'):
                if field in data:
                    setattr(user, field, data[field])
            if email_changed:
                user.email = data['email']
                user.username = data['email']
                profile.is_verified = False
            user.save()
            for field in ('role', 'phone', 'specialization', 'credentials', 'preferences'):
                if field in data:
                    setattr(profile, field, data[field])
            profile.save()
        if email_changed:
            _send_verification(user)
        return Response({'success': True, 'user': UserSerializer(user).data})

    def partial_update(self, request, *args, **kwargs):
        return self.update(request, *args, **kwargs)

    def destroy(self, request, *args, **kwargs):
        user = self.get_object()
        if user.id == request.user.id:
            raise AppError('You cannot delete your own account')
        with transaction.atomic():
            user.is_active = False
            user.save(update_fields=['is_active'])
            user.profile.deleted_at = timezone.now()
            user.profile.save(update_fields=['deleted_at', 'updated_at'])
        logger.info(f"User {user.email} deleted by {request.user.email}")
        return Response({'success': True, 'message': 'User deleted successfully'})

    @action(detail=False, methods=['post', 'put'], url_path='change-password')
    def change_password(self, request):
        serializer = ChangePasswordSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        user = request.user
        if not user.check_password(serializer.validated_data['current_password']):
            raise AppError('Current password is incorrect')
        _set_password(user, serializer.validated_data['new_password'])
        end_session(request.auth)
        record_audit('password_changed', user=user, request=request, resource_type='users', resource_id=user.id)
        return Response({'success': True, 'message': 'Password changed successfully', **issue_tokens(user)})

    @action(detail=True, methods=['get'])
    def stats(self, request, pk=None):
        user = self.get_object()
        profile = user.profile
        stats = {
            'rating_average': str(profile.rating_average),
            'rating_count': profile.rating_count,
        }
        if profile.role == UserProfile.ROLE_RADIOLOGIST:
            stats['study_stats'] = Study.objects.filter(assigned_radiologist=user).aggregate(
                total_studies=Count('id'),
                completed_studies=Count('id', filter=Q(status__in=[Study.STATUS_COMPLETED, Study.STATUS_REPORTED])),
                pending_studies=Count('id', filter=Q(status__in=Study.ACTIVE_STATUSES)),
                stat_studies=Count('id', filter=Q(is_stat=True)),
                breached_studies=Count('id', filter=Q(sla_breached_at__isnull=False)),
            )
            reports = Report.objects.filter(radiologist=user)
            turnaround = reports.filter(finalized_at__isnull=False).aggregate(
                avg=Avg(F('finalized_at') - F('created_at'))
            )['avg']
            stats['report_stats'] = {
                'total_reports': reports.count(),
                'finalized_reports': reports.filter(status=Report.STATUS_FINALIZED).count(),
                'avg_turnaround_hours': round(turnaround.total_seconds() / 3600, 2) if turnaround else None,
            }
        return Response({'success': True, 'stats': stats})

    @action(detail=True, methods=['get'])
    def activity(self, request, pk=None):
        user = self.get_object()
        paginator = StandardPagination()
        page = paginator.paginate_queryset(AuditLog.objects.filter(user=user), request, view=self)
        return paginator.get_paginated_response(AuditLogSerializer(page, many=True).data)

    @action(detail=False, methods=['post'], url_path='2fa/setup')
    def two_factor_setup(self, request):
        profile = request.user.profile
        if profile.two_factor_enabled:
            raise AppError('Two-factor authentication is already enabled')
        setup = two_factor.generate_secret(request.user)
        cache.set(PENDING_2FA_KEY.format(user_id=request.user.id), setup['secret'], timeout=PENDING_2FA_TTL)
        return Response({'success': True, **setup})

    @action(detail=False, methods=['post'], url_path='2fa/enable')
    def two_factor_enable(self, request):
        serializer = TwoFactorTokenSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        key = PENDING_2FA_KEY.format(user_id=request.user.id)
        secret = cache.get(key)
        if not secret:
            raise AppError('Run two-factor setup first')
        codes = two_factor.enable(request.user.profile, secret, serializer.validated_data['token'])
        if codes is None:
            raise AppError('Invalid verification code')
        cache.delete(key)
        record_audit('2fa_enabled', user=request.user, request=request, resource_type='users', resource_id=request.user.id)
        return Response({
            'success': True,
            'message': 'Two-factor authentication enabled',
            'backup_codes': codes,
        })

    @action(detail=False, methods=['post'], url_path='2fa/disable')
    def two_factor_disable(self, request):
        serializer = TwoFactorTokenSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        profile = request.user.profile
        if not profile.two_factor_enabled:
            raise AppError('Two-factor authentication is not enabled')
        if not two_factor.disable(profile, serializer.validated_data['token']):
            raise AppError('Invalid verification code')
        record_audit('2fa_disabled', user=request.user, request=request, resource_type='users', resource_id=request.user.id)
        return Response({'success': True, 'message': 'Two-factor authentication disabled'})

    @action(detail=False, methods=['post'], url_path='2fa/backup-codes')
    def two_factor_backup_codes(self, request):
        serializer = TwoFactorTokenSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        profile = request.user.profile
        if not profile.two_factor_enabled:
            raise AppError('Two-factor authentication is not enabled')
        codes = two_factor.regenerate_backup_codes(profile, serializer.validated_data['token'])
        if codes is None:
            raise AppError('Invalid verification code')
        record_audit('2fa_backup_codes_regenerated', user=request.user, request=request,
                     resource_type='users', resource_id=request.user.id)
        return Response({'success': True, 'backup_codes': codes})


# ---------------------------------------------------------------------------
# organizations/
# ---------------------------------------------------------------------------

@api_view(['GET', 'PUT', 'PATCH'])
def current_organization(request):
    profile = request.user.profile
    organization = profile.organization
    if request.method == 'GET':
        return Response({'success': True, 'organization': OrganizationSerializer(organization).data})

    if not profile.is_admin:
        raise PermissionDenied('Only admins can update the organization')
    serializer = OrganizationUpdateSerializer(organization, data=request.data, partial=True)
    serializer.is_valid(raise_exception=True)
    serializer.save()
    logger.info(f"Organization {organization.code} updated by {request.user.email}")
    return Response({'success': True, 'organization': OrganizationSerializer(organization).data})


@api_view(['POST'])
@permission_classes([IsSuperUser])
def create_organization(request):
    serializer = OrganizationSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    organization = serializer.save()
    logger.info(f"Organization {organization.code} created by {request.user.email}")
    return Response({'success': True, 'organization': OrganizationSerializer(organization).data},
                    status=status.HTTP_201_CREATED)


def _average_hours(queryset, end_field, start_field):
    average = queryset.filter(**{f"{end_field}__isnull": False}).aggregate(
        avg=Avg(F(end_field) - F(start_field))
    )['avg']
    return round(average.total_seconds() / 3600, 2) if average else None


@api_view(['GET'])
def organization_stats(request):
    organization = request.user.profile.organization
    studies = Study.objects.filter(organization=organization)
    study_stats = studies.aggregate(
        total_studies=Count('id'),
        unread_studies=Count('id', filter=Q(status=Study.STATUS_UNREAD)),
        assigned_studies=Count('id', filter=Q(status=Study.STATUS_ASSIGNED)),
        in_progress_studies=Count('id', filter=Q(status=Study.STATUS_IN_PROGRESS)),
        completed_studies=Count('id', filter=Q(status=Study.STATUS_COMPLETED)),
        reported_studies=Count('id', filter=Q(status=Study.STATUS_REPORTED)),
        stat_studies=Count('id', filter=Q(is_stat=True)),
        sla_breaches=Count('id', filter=Q(sla_breached_at__isnull=False)),
    )
    user_stats = UserProfile.objects.filter(
        organization=organization, user__is_active=True, deleted_at__isnull=True
    ).aggregate(
        total_users=Count('id'),
        admins=Count('id', filter=Q(role=UserProfile.ROLE_ADMIN)),
        radiologists=Count('id', filter=Q(role=UserProfile.ROLE_RADIOLOGIST)),
        managers=Count('id', filter=Q(role=UserProfile.ROLE_MANAGER)),
        technicians=Count('id', filter=Q(role=UserProfile.ROLE_TECHNICIAN)),
    )
    reports = Report.objects.filter(study__organization=organization)
    report_stats = reports.aggregate(
        total_reports=Count('id'),
        finalized_reports=Count('id', filter=Q(status=Report.STATUS_FINALIZED)),
        draft_reports=Count('id', filter=Q(status=Report.STATUS_DRAFT)),
    )
    return Response({
        'success': True,
        'stats': {
            **study_stats,
            'avg_turnaround_hours': _average_hours(studies, 'completed_at', 'created_at'),
            **user_stats,
            **report_stats,
            'avg_reporting_hours': _average_hours(reports, 'finalized_at', 'created_at'),
            'storage': dicom.study_statistics(organization),
        },
    })


@api_view(['GET'])
def organization_users(request):
    queryset = User.objects.filter(
        profile__organization=request.user.profile.organization,
        profile__deleted_at__isnull=True,
        is_active=True,
    ).select_related('profile').order_by('-date_joined')
    role = request.query_params.get('role')
    if role:
        queryset = queryset.filter(profile__role=role)
    search = request.query_params.get('search')
    if search:
        queryset = queryset.filter(
            Q(first_name__icontains=search) | Q(last_name__icontains=search) | Q(email__icontains=search)
        )
    paginator = StandardPagination()
    page = paginator.paginate_queryset(queryset, request)
    return paginator.get_paginated_response(UserSummarySerializer(page, many=True).data)


# ---------------------------------------------------------------------------
# billing/
# ---------------------------------------------------------------------------

class InvoiceViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated, AdminPermission]
    filterset_fields = ['status']

    def get_queryset(self):
        return Invoice.objects.filter(organization=self.request.user.profile.organization).select_related('organization')

    @action(detail=False, methods=['get'])
    def summary(self, request):
        return Response({'success': True, 'summary': billing.billing_summary(request.user.profile.organization)})

    @action(detail=True, methods=['put', 'post'])
    def pay(self, request, pk=None):
        invoice = self.get_object()
        serializer = PaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        invoice = billing.record_payment(invoice, **serializer.validated_data)
        return Response({'success': True, 'message': 'Payment recorded', 'invoice': InvoiceSerializer(invoice).data})


# ---------------------------------------------------------------------------
# notifications/
# ---------------------------------------------------------------------------

class NotificationViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, mixins.DestroyModelMixin,
                          viewsets.GenericViewSet):
    serializer_class = NotificationSerializer
    filterset_fields = ['is_read', 'type', 'priority']

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user)

    def destroy(self, request, *args, **kwargs):
        self.get_object().delete()
        return Response({'success': True, 'message': 'Notification deleted'})

    @action(detail=True, methods=['put', 'post'])
    def read(self, request, pk=None):
        notification = self.get_object()
        notification.mark_read()
        return Response({'success': True, 'notification': NotificationSerializer(notification).data})

    @action(detail=False, methods=['put', 'post'], url_path='read-all')
    def read_all(self, request):
        updated = self.get_queryset().filter(is_read=False).update(is_read=True, read_at=timezone.now())
        return Response({'success': True, 'updated': updated})

    @action(detail=False, methods=['get'], url_path='unread-count')
    def unread_count(self, request):
        return Response({'success': True, 'count': self.get_queryset().filter(is_read=False).count()})

