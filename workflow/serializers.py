from django.contrib.auth.models import User
from django.contrib.auth.password_validation import validate_password
from rest_framework import serializers

from .models import (
    SLA, AuditLog, Dispute, Instance, Invoice, Notification, Organization, Rating,
    Report, ReportTemplate, Series, Study, UserProfile,
)


class OrganizationSerializer(serializers.ModelSerializer):
    member_count = serializers.SerializerMethodField()

    class Meta:
        model = Organization
        fields = [
            'id', 'name', 'code', 'type', 'description', 'address', 'contact_email',
            'contact_phone', 'license_number', 'tax_id', 'settings', 'branding',
            'sla_defaults', 'is_active', 'member_count', 'created_at', 'updated_at',
        ]
        read_only_fields = ['id', 'created_at', 'updated_at']

    def get_member_count(self, obj):
        return obj.members.filter(deleted_at__isnull=True, user__is_active=True).count()


class OrganizationUpdateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Organization
        fields = [
            'name', 'description', 'address', 'contact_email', 'contact_phone',
            'license_number', 'tax_id', 'settings', 'branding', 'sla_defaults',
        ]


class UserProfileSerializer(serializers.ModelSerializer):
    organization_name = serializers.CharField(source='organization.name', read_only=True)

    class Meta:
        model = UserProfile
        fields = [
            'role', 'organization', 'organization_name', 'phone', 'specialization',
            'credentials', 'preferences', 'is_verified', 'two_factor_enabled',
            'rating_average', 'rating_count',
        ]
        read_only_fields = fields


class UserSerializer(serializers.ModelSerializer):
    profile = UserProfileSerializer(read_only=True)
    full_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = [
            'id', 'email', 'first_name', 'last_name', 'full_name', 'is_active',
            'last_login', 'date_joined', 'profile',
        ]

    def get_full_name(self, obj):
        return obj.get_full_name() or obj.email


class UserSummarySerializer(serializers.ModelSerializer):
    role = serializers.CharField(source='profile.role', read_only=True)

    class Meta:
        model = User
        fields = ['id', 'email', 'first_name', 'last_name', 'role', 'date_joined', 'last_login']


class RegisterSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField(min_length=8, write_only=True)
    first_name = serializers.CharField(max_length=150)
    last_name = serializers.CharField(max_length=150)
    organization_code = serializers.CharField(max_length=50)
    role = serializers.ChoiceField(
        choices=[choice for choice in UserProfile.ROLE_CHOICES if choice[0] != UserProfile.ROLE_ADMIN],
        default=UserProfile.ROLE_VIEWER,
    )

    def validate_email(self, value):
        return value.strip().lower()

    def validate_password(self, value):
        validate_password(value)
        return value

    def validate_organization_code(self, value):
        organization = Organization.objects.filter(code=value.strip().upper(), is_active=True).first()
        if organization is None:
            raise serializers.ValidationError('Invalid organization code')
        return organization


class LoginSerializer(serializers.Serializer):
    email = serializers.EmailField()
    password = serializers.CharField(write_only=True)
    two_factor_token = serializers.CharField(required=False, allow_blank=True)


class UserCreateSerializer(serializers.Serializer):
    email = serializers.EmailField()
    first_name = serializers.CharField(max_length=150)
    last_name = serializers.CharField(max_length=150)
    role = serializers.ChoiceField(choices=UserProfile.ROLE_CHOICES)
    password = serializers.CharField(min_length=8, required=False, write_only=True)
    phone = serializers.CharField(max_length=30, required=False, allow_blank=True)
    specialization = serializers.CharField(max_length=200, required=False, allow_blank=True)
    credentials = serializers.JSONField(required=False)

    def validate_email(self, value):
        return value.strip().lower()


class UserUpdateSerializer(serializers.Serializer):
    email = serializers.EmailField(required=False)
    first_name = serializers.CharField(max_length=150, required=False)
    last_name = serializers.CharField(max_length=150, required=False)
    role = serializers.ChoiceField(choices=UserProfile.ROLE_CHOICES, required=False)
    is_active = serializers.BooleanField(required=False)
    phone = serializers.CharField(max_length=30, required=False, allow_blank=True)
    specialization = serializers.CharField(max_length=200, required=False, allow_blank=True)
    credentials = serializers.JSONField(required=False)
    preferences = serializers.JSONField(required=False)

    def validate_email(self, value):
        return value.strip().lower()


class ChangePasswordSerializer(serializers.Serializer):
    current_password = serializers.CharField(write_only=True)
    new_password = serializers.CharField(min_length=8, write_only=True)

    def validate_new_password(self, value):
        validate_password(value)
        return value


class ResetPasswordSerializer(serializers.Serializer):
    token = serializers.CharField()
    password = serializers.CharField(min_length=8, write_only=True)

    def validate_password(self, value):
        validate_password(value)
        return value


class TwoFactorTokenSerializer(serializers.Serializer):
    token = serializers.CharField(max_length=16)


class InstanceSerializer(serializers.ModelSerializer):
    file_size_mb = serializers.SerializerMethodField()

    class Meta:
        model = Instance
        fields = [
            'id', 'sop_instance_uid', 'sop_class_uid', 'instance_number', 'transfer_syntax_uid',
            'rows', 'columns', 'pixel_spacing', 'slice_thickness', 'image_position',
            'image_orientation', 'window_center', 'window_width', 'file_size', 'file_size_mb',
            'checksum', 'created_at',
        ]

    def get_file_size_mb(self, obj):
        return obj.file_size_mb


class SeriesSerializer(serializers.ModelSerializer):
    instances = InstanceSerializer(many=True, read_only=True)

    class Meta:
        model = Series
        fields = [
            'id', 'series_instance_uid', 'series_number', 'series_description', 'modality',
            'body_part_examined', 'protocol_name', 'number_of_instances', 'total_size_bytes',
            'instances', 'created_at',
        ]


class StudyListSerializer(serializers.ModelSerializer):
    assigned_radiologist_name = serializers.SerializerMethodField()
    total_size_mb = serializers.SerializerMethodField()
    is_overdue = serializers.SerializerMethodField()

    class Meta:
        model = Study
        fields = [
            'id', 'study_instance_uid', 'accession_number', 'patient_id', 'patient_name',
            'patient_sex', 'patient_age', 'study_description', 'study_date', 'modality',
            'body_part', 'priority', 'status', 'is_stat', 'assigned_radiologist',
            'assigned_radiologist_name', 'assigned_at', 'sla_due_date', 'sla_breached_at',
            'is_overdue', 'number_of_series', 'number_of_instances', 'total_size_mb', 'created_at',
        ]

    def get_assigned_radiologist_name(self, obj):
        if obj.assigned_radiologist:
            return obj.assigned_radiologist.get_full_name() or obj.assigned_radiologist.email
        return None

    def get_total_size_mb(self, obj):
        return obj.total_size_mb

    def get_is_overdue(self, obj):
        return obj.is_overdue


class StudySerializer(StudyListSerializer):
    series = SeriesSerializer(many=True, read_only=True)
    report_count = serializers.SerializerMethodField()

    class Meta(StudyListSerializer.Meta):
        fields = StudyListSerializer.Meta.fields + [
            'patient_birth_date', 'referring_physician', 'study_time', 'institution_name',
            'clinical_history', 'started_at', 'completed_at', 'reported_at',
            'sla_warning_sent_at', 'total_size_bytes', 'storage_path', 'dicom_metadata',
            'is_anonymized', 'created_by', 'updated_at', 'series', 'report_count',
        ]
        read_only_fields = [
            'status', 'assigned_radiologist', 'assigned_at', 'started_at', 'completed_at',
            'reported_at', 'sla_due_date', 'sla_warning_sent_at', 'sla_breached_at',
            'number_of_series', 'number_of_instances', 'total_size_bytes', 'storage_path',
            'dicom_metadata', 'is_anonymized', 'created_by',
        ]

    def get_report_count(self, obj):
        return obj.reports.count()


class StudyCreateSerializer(serializers.ModelSerializer):
    study_instance_uid = serializers.CharField(max_length=128)
    patient_name = serializers.CharField(max_length=200)
    patient_id = serializers.CharField(max_length=64)
    modality = serializers.CharField(max_length=16)

    class Meta:
        model = Study
        fields = [
            'study_instance_uid', 'accession_number', 'patient_id', 'patient_name',
            'patient_birth_date', 'patient_sex', 'patient_age', 'referring_physician',
            'study_description', 'study_date', 'modality', 'body_part', 'institution_name',
            'priority', 'is_stat', 'clinical_history',
        ]


class StudyUpdateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Study
        fields = [
            'accession_number', 'patient_name', 'patient_birth_date', 'patient_sex', 'patient_age',
            'referring_physician', 'study_description', 'study_date', 'body_part',
            'institution_name', 'priority', 'clinical_history',
        ]


class AssignSerializer(serializers.Serializer):
    radiologist_id = serializers.IntegerField()


class ReportTemplateSerializer(serializers.ModelSerializer):
    class Meta:
        model = ReportTemplate
        fields = [
            'id', 'name', 'description', 'modality', 'body_part', 'category',
            'template_content', 'sections', 'macros', 'language', 'is_default',
            'is_active', 'created_by', 'created_at', 'updated_at',
        ]
        read_only_fields = ['id', 'created_by', 'created_at', 'updated_at']


class ReportSerializer(serializers.ModelSerializer):
    radiologist_name = serializers.SerializerMethodField()
    patient_name = serializers.CharField(source='study.patient_name', read_only=True)
    modality = serializers.CharField(source='study.modality', read_only=True)

    class Meta:
        model = Report
        fields = [
            'id', 'report_number', 'study', 'radiologist', 'radiologist_name', 'patient_name',
            'modality', 'template', 'status', 'clinical_history', 'technique', 'comparison',
            'findings', 'impression', 'recommendations', 'measurements', 'annotations',
            'language', 'is_urgent', 'is_critical', 'critical_findings', 'finalized_at',
            'finalized_by', 'signed_at', 'signed_by', 'signature_type', 'version',
            'created_at', 'updated_at',
        ]
        read_only_fields = [
            'id', 'report_number', 'radiologist', 'status', 'annotations', 'finalized_at',
            'finalized_by', 'signed_at', 'signed_by', 'signature_type', 'version',
            'created_at', 'updated_at',
        ]

    def get_radiologist_name(self, obj):
        return obj.radiologist.get_full_name() or obj.radiologist.email


class ReportUpdateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Report
        fields = [
            'template', 'clinical_history', 'technique', 'comparison', 'findings',
            'impression', 'recommendations', 'measurements', 'language', 'is_urgent',
            'is_critical', 'critical_findings',
        ]


class ReportCreateSerializer(ReportUpdateSerializer):
    study_id = serializers.IntegerField()

    class Meta(ReportUpdateSerializer.Meta):
        fields = ReportUpdateSerializer.Meta.fields + ['study_id']


class SignSerializer(serializers.Serializer):
    signature_type = serializers.ChoiceField(choices=[('electronic', 'Electronic'), ('digital', 'Digital')])
    signature_data = serializers.CharField(required=False, allow_blank=True)


class RevisionSerializer(serializers.Serializer):
    reason = serializers.CharField()
    changes = serializers.DictField()

    def validate_changes(self, value):
        unknown = set(value) - set(Report.CONTENT_FIELDS)
        if unknown:
            raise serializers.ValidationError(f"Cannot revise fields: {', '.join(sorted(unknown))}")
        if not value:
            raise serializers.ValidationError('No changes supplied')
        return value


class AnnotationSerializer(serializers.Serializer):
    TYPE_CHOICES = ['measurement', 'arrow', 'text', 'circle', 'rectangle']

    type = serializers.ChoiceField(choices=TYPE_CHOICES)
    data = serializers.DictField()
    series_id = serializers.IntegerField(required=False, allow_null=True)
    instance_id = serializers.IntegerField(required=False, allow_null=True)


class AnnotationUpdateSerializer(serializers.Serializer):
    data = serializers.DictField()


class SLASerializer(serializers.ModelSerializer):
    class Meta:
        model = SLA
        fields = [
            'id', 'name', 'description', 'priority', 'modality', 'turnaround_time_minutes',
            'warning_threshold_minutes', 'is_active', 'created_at', 'updated_at',
        ]
        read_only_fields = ['id', 'created_at', 'updated_at']

    def validate(self, attrs):
        turnaround = attrs.get('turnaround_time_minutes', getattr(self.instance, 'turnaround_time_minutes', None))
        warning = attrs.get('warning_threshold_minutes', getattr(self.instance, 'warning_threshold_minutes', 30))
        if turnaround is not None and warning >= turnaround:
            raise serializers.ValidationError({'warning_threshold_minutes': 'Warning threshold must be shorter than the turnaround time.'})
        return attrs


class RatingSerializer(serializers.ModelSerializer):
    rated_by_name = serializers.SerializerMethodField()

    class Meta:
        model = Rating
        fields = [
            'id', 'radiologist', 'study', 'report', 'rated_by', 'rated_by_name', 'rating',
            'feedback', 'criteria_scores', 'category', 'created_at',
        ]
        read_only_fields = ['id', 'radiologist', 'rated_by', 'created_at']

    def get_rated_by_name(self, obj):
        return obj.rated_by.get_full_name() or obj.rated_by.email


class DisputeAssigneeMixin:
    def validate_assigned_to(self, value):
        if value is None:
            return value
        organization_id = self.context['request'].user.profile.organization_id
        member = UserProfile.objects.filter(
            user=value, organization_id=organization_id, deleted_at__isnull=True, user__is_active=True,
        )
        if not member.exists():
            raise serializers.ValidationError('User not found in this organization')
        return value


class DisputeSerializer(DisputeAssigneeMixin, serializers.ModelSerializer):
    report_number = serializers.CharField(source='report.report_number', read_only=True)

    class Meta:
        model = Dispute
        fields = [
            'id', 'dispute_number', 'report', 'report_number', 'study', 'raised_by',
            'assigned_to', 'status', 'priority', 'reason', 'description', 'evidence',
            'resolution', 'resolved_at', 'resolved_by', 'created_at', 'updated_at',
        ]
        read_only_fields = [
            'id', 'dispute_number', 'study', 'raised_by', 'status', 'resolution',
            'resolved_at', 'resolved_by', 'created_at', 'updated_at',
        ]


class DisputeUpdateSerializer(DisputeAssigneeMixin, serializers.ModelSerializer):
    class Meta:
        model = Dispute
        fields = ['status', 'priority', 'assigned_to', 'resolution']

    def validate_status(self, value):
        settled = (Dispute.STATUS_RESOLVED, Dispute.STATUS_CLOSED)
        if self.instance is not None and self.instance.status in settled and value not in settled:
            raise serializers.ValidationError('Resolved disputes cannot be reopened')
        return value


class InvoiceSerializer(serializers.ModelSerializer):
    balance = serializers.SerializerMethodField()
    organization_name = serializers.CharField(source='organization.name', read_only=True)

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'organization', 'organization_name', 'billing_period',
            'period_start', 'period_end', 'amount_due', 'amount_paid', 'balance', 'currency',
            'status', 'line_items', 'usage_summary', 'due_date', 'paid_date',
            'payment_method', 'payment_reference', 'notes', 'created_at',
        ]

    def get_balance(self, obj):
        return str(obj.balance)


class PaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    payment_method = serializers.CharField(max_length=50, required=False, allow_blank=True)
    payment_reference = serializers.CharField(max_length=100, required=False, allow_blank=True)


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = [
            'id', 'type', 'title', 'message', 'data', 'priority', 'is_read', 'read_at',
            'is_email_sent', 'created_at',
        ]


class AuditLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = AuditLog
        fields = [
            'id', 'action', 'resource_type', 'resource_id', 'old_values', 'new_values',
            'ip_address', 'user_agent', 'metadata', 'created_at',
        ]
