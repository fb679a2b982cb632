from django import forms
from django.contrib import admin

from .models import (
    SLA, AuditLog, Dispute, Instance, Invoice, Notification, Organization, Rating, Report,
    ReportTemplate, Series, Study, UserProfile
)


class UserProfileAdminForm(forms.ModelForm):
    class Meta:
        model = UserProfile
        fields = '__all__'
        widgets = {
            'specialization': forms.Textarea(attrs={
                'rows': 3,
                'cols': 80,
                'style': 'width: 100%; max-width: 350px;'
            }),
        }


class UserProfileInline(admin.TabularInline):
    model = UserProfile
    fields = ('user', 'role', 'is_verified', 'two_factor_enabled')
    readonly_fields = ('two_factor_enabled',)
    extra = 0


@admin.register(Organization)
class OrganizationAdmin(admin.ModelAdmin):
    list_display = ('name', 'code', 'type', 'contact_email', 'is_active', 'show_member_count')
    list_filter = ('type', 'is_active')
    search_fields = ('name', 'code', 'contact_email')
    inlines = [UserProfileInline]

    fieldsets = (
        ('Organization', {
            'fields': ('name', 'code', 'type', 'description', 'is_active')
        }),
        ('Contact', {
            'fields': ('contact_email', 'contact_phone', 'address', 'license_number', 'tax_id')
        }),
        ('Configuration', {
            'fields': ('settings', 'branding', 'sla_defaults'),
            'classes': ('collapse',),
        }),
    )

    def show_member_count(self, obj):
        return obj.members.filter(deleted_at__isnull=True).count()
    show_member_count.short_description = "Members"


@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    form = UserProfileAdminForm
    list_display = ('user', 'full_name', 'organization', 'role', 'is_verified', 'two_factor_enabled', 'rating_average')
    list_filter = ('role', 'organization', 'is_verified', 'two_factor_enabled')
    search_fields = ('user__username', 'user__first_name', 'user__last_name', 'specialization')
    readonly_fields = ('rating_average', 'rating_count', 'password_changed_at', 'created_at', 'updated_at')
    exclude = ('two_factor_secret', 'backup_codes', 'verification_token', 'reset_token')

    fieldsets = (
        ('User Information', {
            'fields': ('user', 'organization', 'role')
        }),
        ('Personal Details', {
            'fields': ('phone', 'specialization', 'credentials', 'preferences')
        }),
        ('Security', {
            'fields': ('is_verified', 'two_factor_enabled', 'password_changed_at', 'deleted_at')
        }),
        ('Ratings', {
            'fields': ('rating_average', 'rating_count'),
            'classes': ('collapse',),
        }),
    )


class SeriesInline(admin.TabularInline):
    model = Series
    fields = ('series_number', 'series_description', 'modality', 'number_of_instances')
    readonly_fields = fields
    extra = 0
    show_change_link = True


@admin.register(Study)
class StudyAdmin(admin.ModelAdmin):
    list_display = (
        'patient_name', 'patient_id', 'modality', 'organization',
        'priority', 'status', 'assigned_radiologist', 'sla_due_date', 'created_at')
    list_filter = ('organization', 'status', 'priority', 'is_stat', 'modality', 'created_at')
    search_fields = ('patient_name', 'patient_id', 'accession_number', 'study_instance_uid')
    ordering = ('-created_at',)
    raw_id_fields = ('assigned_radiologist', 'created_by')
    readonly_fields = ('number_of_series', 'number_of_instances', 'total_size_bytes', 'created_at', 'updated_at')
    inlines = [SeriesInline]

    fieldsets = (
        ('Patient', {
            'fields': ('patient_name', 'patient_id', 'patient_birth_date', 'patient_sex', 'patient_age')
        }),
        ('Study', {
            'fields': ('organization', 'study_instance_uid', 'accession_number', 'study_description',
                       'study_date', 'modality', 'body_part', 'referring_physician', 'clinical_history')
        }),
        ('Workflow', {
            'fields': ('priority', 'is_stat', 'status', 'assigned_radiologist', 'assigned_at',
                       'started_at', 'completed_at', 'reported_at')
        }),
        ('SLA', {
            'fields': ('sla_due_date', 'sla_warning_sent_at', 'sla_breached_at')
        }),
        ('Storage', {
            'fields': ('number_of_series', 'number_of_instances', 'total_size_bytes', 'storage_path',
                       'is_anonymized', 'created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )


class InstanceInline(admin.TabularInline):
    model = Instance
    fields = ('instance_number', 'sop_instance_uid', 'rows', 'columns', 'file_size')
    readonly_fields = fields
    extra = 0


@admin.register(Series)
class SeriesAdmin(admin.ModelAdmin):
    list_display = ('series_instance_uid', 'study', 'series_number', 'modality', 'number_of_instances')
    list_filter = ('modality',)
    search_fields = ('series_instance_uid', 'series_description', 'study__patient_name')
    inlines = [InstanceInline]


@admin.register(Instance)
class InstanceAdmin(admin.ModelAdmin):
    list_display = ('sop_instance_uid', 'series', 'instance_number', 'transfer_syntax_uid', 'file_size')
    search_fields = ('sop_instance_uid', 'series__series_instance_uid')


@admin.register(ReportTemplate)
class ReportTemplateAdmin(admin.ModelAdmin):
    list_display = ('name', 'organization', 'modality', 'body_part', 'category', 'is_default', 'is_active')
    list_filter = ('organization', 'modality', 'is_default', 'is_active')
    search_fields = ('name', 'category', 'description')


@admin.register(Report)
class ReportAdmin(admin.ModelAdmin):
    list_display = ('report_number', 'study', 'radiologist', 'status', 'is_critical', 'version', 'finalized_at')
    list_filter = ('status', 'is_critical', 'is_urgent', 'signature_type')
    search_fields = ('report_number', 'study__patient_name', 'study__accession_number')
    raw_id_fields = ('study', 'radiologist', 'finalized_by', 'signed_by')
    readonly_fields = ('report_number', 'version', 'revision_history', 'created_at', 'updated_at')

    fieldsets = (
        ('Report', {
            'fields': ('report_number', 'study', 'radiologist', 'template', 'status', 'version', 'language')
        }),
        ('Content', {
            'fields': ('clinical_history', 'technique', 'comparison', 'findings', 'impression', 'recommendations')
        }),
        ('Flags', {
            'fields': ('is_urgent', 'is_critical', 'critical_findings')
        }),
        ('Sign-off', {
            'fields': ('finalized_at', 'finalized_by', 'signed_at', 'signed_by', 'signature_type')
        }),
        ('History', {
            'fields': ('revision_history', 'created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )


@admin.register(SLA)
class SLAAdmin(admin.ModelAdmin):
    list_display = ('name', 'organization', 'priority', 'modality', 'turnaround_time_minutes',
                    'warning_threshold_minutes', 'is_active')
    list_filter = ('organization', 'priority', 'is_active')


@admin.register(Rating)
class RatingAdmin(admin.ModelAdmin):
    list_display = ('radiologist', 'study', 'rating', 'rated_by', 'category', 'created_at')
    list_filter = ('rating', 'category')
    raw_id_fields = ('radiologist', 'study', 'report', 'rated_by')


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ('invoice_number', 'organization', 'period_start', 'period_end',
                    'amount_due', 'amount_paid', 'status', 'due_date')
    list_filter = ('status', 'organization')
    search_fields = ('invoice_number', 'payment_reference')
    readonly_fields = ('line_items', 'usage_summary', 'created_at', 'updated_at')


@admin.register(Dispute)
class DisputeAdmin(admin.ModelAdmin):
    list_display = ('dispute_number', 'report', 'status', 'priority', 'raised_by', 'assigned_to', 'created_at')
    list_filter = ('status', 'priority')
    search_fields = ('dispute_number', 'reason', 'report__report_number')
    raw_id_fields = ('report', 'study', 'raised_by', 'assigned_to', 'resolved_by')


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('title', 'user', 'type', 'priority', 'is_read', 'is_email_sent', 'created_at')
    list_filter = ('type', 'priority', 'is_read')
    search_fields = ('title', 'message', 'user__username')


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'action', 'user', 'organization', 'resource_type', 'resource_id', 'ip_address')
    list_filter = ('resource_type', 'organization')
    search_fields = ('action', 'resource_id', 'user__username')
    ordering = ('-created_at',)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


admin.site.site_header = "Radiology Platform Admin"
admin.site.site_title = "Radiology Platform Admin"
admin.site.index_title = "Radiology Workflow Management"
