import logging
import os
import uuid

from django.contrib.auth.models import User
from django.db import transaction
from django.db.models import Q
from django.http import FileResponse, HttpResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django_filters import rest_framework as filters
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action, api_view, parser_classes, permission_classes
from rest_framework.exceptions import PermissionDenied
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response

from . import assignment, dicom, notifications
from .audit import record_audit
from .exceptions import AppError, Conflict
from .models import SLA, Dispute, Instance, Rating, Report, ReportTemplate, Study, UserProfile
from .permissions import (
    AdminOrManagerPermission,
    AdminPermission,
    IsAuthenticated,
    RadiologistPermission,
    StudyIntakePermission,
    TemplateEditorPermission,
    can_access_report,
    can_access_study,
    get_profile,
)
from .report_export import DOCX_CONTENT_TYPE, build_report_docx, report_to_dict
from .serializers import (
    AnnotationSerializer,
    AnnotationUpdateSerializer,
    AssignSerializer,
    DisputeSerializer,
    DisputeUpdateSerializer,
    RatingSerializer,
    ReportCreateSerializer,
    ReportSerializer,
    ReportTemplateSerializer,
    ReportUpdateSerializer,
    RevisionSerializer,
    SignSerializer,
    SLASerializer,
    StudyCreateSerializer,
    StudyListSerializer,
    StudySerializer,
    StudyUpdateSerializer,
)

logger = logging.getLogger(__name__)

MAX_THUMBNAIL_SIZE = 512


def _milliseconds(later, earlier):
    if later is None or earlier is None:
        return None
    return int((later - earlier).total_seconds() * 1000)


class OrganizationScopedMixin:
    def get_organization(self):
        return self.request.user.profile.organization

    def get_role(self):
        return self.request.user.profile.role


class StudyFilter(filters.FilterSet):
    status = filters.CharFilter(method='filter_in')
    priority = filters.CharFilter(method='filter_in')
    modality = filters.CharFilter(method='filter_in')
    assigned_radiologist = filters.NumberFilter(field_name='assigned_radiologist_id')
    is_stat = filters.BooleanFilter(field_name='is_stat')
    date_from = filters.DateFilter(field_name='study_date', lookup_expr='gte')
    date_to = filters.DateFilter(field_name='study_date', lookup_expr='lte')
    search = filters.CharFilter(method='filter_search')

    class Meta:
        model = Study
        fields = ['status', 'priority', 'modality', 'assigned_radiologist', 'is_stat']

    def filter_in(self, queryset, name, value):
        values = [v.strip() for v in value.split(",") if v.strip()]
        if values:
            return queryset.filter(**{f"{name}__in": values})
        return queryset

    def filter_search(self, queryset, name, value):
        return queryset.filter(
            Q(patient_name__icontains=value)
            | Q(patient_id__icontains=value)
            | Q(accession_number__icontains=value)
            | Q(study_description__icontains=value)
        )


class StudyViewSet(OrganizationScopedMixin, viewsets.ModelViewSet):
    filterset_class = StudyFilter

    def get_permissions(self):
        if self.action in ('create', 'upload'):
            return [IsAuthenticated(), StudyIntakePermission()]
        if self.action in ('update', 'partial_update', 'assign', 'stat'):
            return [IsAuthenticated(), AdminOrManagerPermission()]
        if self.action == 'destroy':
            return [IsAuthenticated(), AdminPermission()]
        if self.action in ('take', 'start', 'complete'):
            return [IsAuthenticated(), RadiologistPermission()]
        return [IsAuthenticated()]

    def get_serializer_class(self):
        if self.action == 'list':
            return StudyListSerializer
        if self.action == 'create':
            return StudyCreateSerializer
        if self.action in ('update', 'partial_update'):
            return StudyUpdateSerializer
        return StudySerializer

    def get_queryset(self):
        queryset = Study.objects.filter(organization=self.get_organization()).select_related('assigned_radiologist')
        if self.get_role() == UserProfile.ROLE_RADIOLOGIST:
            queryset = queryset.filter(
                Q(assigned_radiologist=self.request.user)
                | Q(status=Study.STATUS_UNREAD, assigned_radiologist__isnull=True)
            )
        if self.action == 'retrieve':
            queryset = queryset.prefetch_related('series__instances')
        return queryset.order_by('-is_stat', '-created_at')

    def get_object(self):
        study = super().get_object()
        if not can_access_study(self.request.user, study, listing=self.action == 'take'):
            raise PermissionDenied('Access denied to this study')
        return study

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        uid = serializer.validated_data['study_instance_uid']
        if Study.objects.filter(study_instance_uid=uid).exists():
            raise Conflict('Study with this StudyInstanceUID already exists')

        is_stat = serializer.validated_data.get('is_stat') or serializer.validated_data.get('priority') == Study.PRIORITY_STAT
        study = serializer.save(organization=self.get_organization(), created_by=request.user, is_stat=False)
        if is_stat:
            assignment.mark_stat(study)
        logger.info(f"Study {study.id} created by {request.user.email}")
        notifications.broadcast_to_organization(study.organization_id, 'study_created', notifications.study_payload(study))
        return Response(
            {'success': True, 'study': StudySerializer(study).data},
            status=status.HTTP_201_CREATED,
        )

    def perform_update(self, serializer):
        previous_priority = serializer.instance.priority
        study = serializer.save()
        if study.priority == previous_priority:
            return
        if study.priority == Study.PRIORITY_STAT and not study.is_stat:
            assignment.mark_stat(study)
        elif study.status in Study.ACTIVE_STATUSES and study.assigned_at:
            study.sla_due_date = assignment.compute_sla_due_date(study, study.assigned_at)
            study.sla_warning_sent_at = None
            study.save(update_fields=['sla_due_date', 'sla_warning_sent_at', 'updated_at'])

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        study = self.get_object()
        serializer = self.get_serializer(study, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        self.perform_update(serializer)
        return Response({'success': True, 'study': StudySerializer(study).data})

    def destroy(self, request, *args, **kwargs):
        study = self.get_object()
        if study.reports.exists():
            raise AppError('Cannot delete study with existing reports')
        file_paths = list(Instance.objects.filter(series__study=study).values_list('file_path', flat=True))
        study_id = study.id
        study.delete()
        storage = dicom.dicom_storage()
        for file_path in file_paths:
            try:
                storage.delete(file_path)
            except OSError as e:
                logger.warning(f"Could not remove {file_path}: {str(e)}")
        logger.info(f"Study {study_id} deleted by {request.user.email}")
        return Response({'success': True, 'message': 'Study deleted successfully'})

    @action(detail=True, methods=['post'], parser_classes=[MultiPartParser, FormParser])
    def upload(self, request, pk=None):
        study = self.get_object()
        files = request.FILES.getlist('files')
        if not files:
            raise AppError('No files uploaded')
        stored, errors = dicom.ingest_files(
            study.organization,
            files,
            study=study,
            uploaded_by=request.user,
            anonymize=str(request.data.get('anonymize', '')).lower() in ('1', 'true', 'yes'),
        )
        study.refresh_from_db()
        return Response(
            {
                'success': bool(stored),
                'message': f"Uploaded {len(stored)} of {len(files)} files",
                'files': stored,
                'errors': errors,
                'study': StudyListSerializer(study).data,
            },
            status=status.HTTP_201_CREATED if stored else status.HTTP_400_BAD_REQUEST,
        )

    @action(detail=True, methods=['put', 'post'])
    def assign(self, request, pk=None):
        study = self.get_object()
        serializer = AssignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        if study.status not in (Study.STATUS_UNREAD, Study.STATUS_ASSIGNED, Study.STATUS_IN_PROGRESS):
            raise AppError(f"Study in status '{study.status}' can no longer be assigned")
        radiologist = User.objects.filter(
            id=serializer.validated_data['radiologist_id'],
            profile__organization=study.organization,
        ).select_related('profile').first()
        if radiologist is None:
            raise AppError('Radiologist not found', status_code=404)
        assignment.assign_study(study, radiologist, assigned_by=request.user)
        return Response({'success': True, 'message': 'Study assigned successfully', 'study': StudyListSerializer(study).data})

    @action(detail=True, methods=['put', 'post'])
    def take(self, request, pk=None):
        with transaction.atomic():
            study = self.get_object()
            study = Study.objects.select_for_update().get(pk=study.pk)
            if study.assigned_radiologist_id is not None or study.status != Study.STATUS_UNREAD:
                raise Conflict('Study is already assigned')
            assignment.assign_study(study, request.user, assigned_by=request.user, notify=False)
        notifications.broadcast_to_organization(study.organization_id, 'study_updated', notifications.study_payload(study))
        return Response({'success': True, 'message': 'Study taken successfully', 'study': StudyListSerializer(study).data})

    @action(detail=True, methods=['put', 'post'])
    def start(self, request, pk=None):
        study = self.get_object()
        if study.status != Study.STATUS_ASSIGNED:
            raise AppError(f"Cannot start a study in status '{study.status}'")
        study.status = Study.STATUS_IN_PROGRESS
        study.started_at = timezone.now()
        study.save(update_fields=['status', 'started_at', 'updated_at'])
        notifications.broadcast_to_organization(study.organization_id, 'study_updated', notifications.study_payload(study))
        return Response({'success': True, 'message': 'Study started', 'study': StudyListSerializer(study).data})

    @action(detail=True, methods=['put', 'post'])
    def complete(self, request, pk=None):
        study = self.get_object()
        if study.status != Study.STATUS_IN_PROGRESS:
            raise AppError(f"Cannot complete a study in status '{study.status}'")
        study.status = Study.STATUS_COMPLETED
        study.completed_at = timezone.now()
        study.save(update_fields=['status', 'completed_at', 'updated_at'])
        notifications.broadcast_to_organization(study.organization_id, 'study_updated', notifications.study_payload(study))
        return Response({'success': True, 'message': 'Study completed', 'study': StudyListSerializer(study).data})

    @action(detail=True, methods=['put', 'post'])
    def stat(self, request, pk=None):
        study = self.get_object()
        if study.status in (Study.STATUS_COMPLETED, Study.STATUS_REPORTED):
            raise AppError('Study has already been read')
        assignment.mark_stat(study)
        return Response({'success': True, 'message': 'Study marked as STAT', 'study': StudyListSerializer(study).data})

    @action(detail=True, methods=['get'])
    def stats(self, request, pk=None):
        study = self.get_object()
        now = timezone.now()
        timings = {
            'time_to_assignment': _milliseconds(study.assigned_at, study.created_at),
            'time_to_start': _milliseconds(study.started_at, study.assigned_at),
            'reading_time': _milliseconds(study.completed_at, study.started_at),
            'time_remaining': _milliseconds(study.sla_due_date, now),
        }
        return Response({
            'stats': {
                'number_of_series': study.number_of_series,
                'number_of_instances': study.number_of_instances,
                'total_size_bytes': study.total_size_bytes,
                'created_at': study.created_at,
                'assigned_at': study.assigned_at,
                'started_at': study.started_at,
                'completed_at': study.completed_at,
                'sla_due_date': study.sla_due_date,
                'sla_breached': study.sla_breached_at is not None,
                'timings': {key: value for key, value in timings.items() if value is not None},
            }
        })


@api_view(['POST'])
@permission_classes([IsAuthenticated, StudyIntakePermission])
@parser_classes([MultiPartParser, FormParser])
def dicom_upload(request):
    files = request.FILES.getlist('files')
    if not files:
        raise AppError('No files uploaded')
    organization = request.user.profile.organization
    stored, errors = dicom.ingest_files(
        organization,
        files,
        uploaded_by=request.user,
        anonymize=str(request.data.get('anonymize', '')).lower() in ('1', 'true', 'yes'),
    )
    study_ids = sorted({item['study_id'] for item in stored})
    studies = Study.objects.filter(id__in=study_ids)
    logger.info(f"DICOM upload by {request.user.email}: {len(stored)} stored, {len(errors)} rejected")
    return Response(
        {
            'success': bool(stored),
            'message': f"Processed {len(files)} files",
            'files': stored,
            'errors': errors,
            'studies': StudyListSerializer(studies, many=True).data,
        },
        status=status.HTTP_201_CREATED if stored else status.HTTP_400_BAD_REQUEST,
    )


def _get_instance(request, instance_id):
    instance = get_object_or_404(
        Instance.objects.select_related('series__study'),
        id=instance_id,
        series__study__organization_id=request.user.profile.organization_id,
    )
    if not can_access_study(request.user, instance.series.study):
        raise PermissionDenied('Access denied to this study')
    return instance


@api_view(['GET'])
def instance_file(request, instance_id):
    instance = _get_instance(request, instance_id)
    path, temporary = dicom.read_for_viewer(instance)
    if not os.path.exists(path):
        raise AppError('DICOM file not found', status_code=404)
    if temporary:
        with open(path, 'rb') as fh:
            content = fh.read()
        os.unlink(path)
        response = HttpResponse(content, content_type='application/dicom')
    else:
        response = FileResponse(open(path, 'rb'), content_type='application/dicom')
    response['Content-Disposition'] = f'inline; filename="{instance.sop_instance_uid}.dcm"'
    return response


@api_view(['GET'])
def instance_thumbnail(request, instance_id):
    instance = _get_instance(request, instance_id)
    try:
        size = min(int(request.query_params.get('size', 256)), MAX_THUMBNAIL_SIZE)
    except ValueError:
        raise AppError('size must be an integer')
    if size < 1:
        raise AppError('size must be a positive integer')
    png = dicom.instance_thumbnail(instance, (size, size))
    return HttpResponse(png, content_type='image/png')


class ReportFilter(filters.FilterSet):
    status = filters.CharFilter(field_name='status')
    study = filters.NumberFilter(field_name='study_id')
    radiologist = filters.NumberFilter(field_name='radiologist_id')
    is_critical = filters.BooleanFilter(field_name='is_critical')

    class Meta:
        model = Report
        fields = ['status', 'study', 'radiologist', 'is_critical']


class ReportViewSet(OrganizationScopedMixin, viewsets.ModelViewSet):
    filterset_class = ReportFilter

    def get_permissions(self):
        if self.action == 'create':
            return [IsAuthenticated(), RadiologistPermission()]
        if self.action == 'destroy':
            return [IsAuthenticated(), AdminPermission()]
        return [IsAuthenticated()]

    def get_serializer_class(self):
        if self.action == 'create':
            return ReportCreateSerializer
        if self.action in ('update', 'partial_update'):
            return ReportUpdateSerializer
        return ReportSerializer

    def get_queryset(self):
        queryset = Report.objects.filter(study__organization=self.get_organization()).select_related(
            'study', 'study__organization', 'radiologist', 'radiologist__profile', 'template'
        )
        role = self.get_role()
        if role == UserProfile.ROLE_RADIOLOGIST:
            queryset = queryset.filter(radiologist=self.request.user)
        elif role in (UserProfile.ROLE_TECHNICIAN, UserProfile.ROLE_VIEWER):
            queryset = queryset.filter(status=Report.STATUS_FINALIZED)
        return queryset

    def get_object(self):
        report = super().get_object()
        if not can_access_report(self.request.user, report):
            raise PermissionDenied('Access denied to this report')
        return report

    def _check_editor(self, report):
        profile = get_profile(self.request.user)
        if report.radiologist_id != self.request.user.id and not profile.is_manager_or_admin:
            raise PermissionDenied('Only the reporting radiologist can change this report')

    def _check_owner(self, report):
        if report.radiologist_id != self.request.user.id:
            raise PermissionDenied('Only the reporting radiologist can perform this action')

    def _check_template(self, template):
        if template is not None and template.organization_id != self.get_organization().id:
            raise AppError('Report template not found', status_code=404)

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        study = Study.objects.filter(id=data.pop('study_id'), organization=self.get_organization()).first()
        if study is None:
            raise AppError('Study not found', status_code=404)
        if study.assigned_radiologist_id != request.user.id:
            raise PermissionDenied('Study is not assigned to you')
        if study.reports.exists():
            raise Conflict('Report already exists for this study')
        self._check_template(data.get('template'))

        with transaction.atomic():
            report = Report.objects.create(study=study, radiologist=request.user, **data)
            now = timezone.now()
            study.status = Study.STATUS_REPORTED
            study.reported_at = now
            if study.completed_at is None:
                study.completed_at = now
            study.save(update_fields=['status', 'reported_at', 'completed_at', 'updated_at'])
        logger.info(f"Report {report.report_number} created for study {study.id}")
        notifications.broadcast_to_organization(study.organization_id, 'study_updated', notifications.study_payload(study))
        return Response({'success': True, 'report': ReportSerializer(report).data}, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        report = self.get_object()
        self._check_editor(report)
        if report.is_locked:
            raise AppError('Cannot update finalized report')
        serializer = self.get_serializer(report, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        self._check_template(serializer.validated_data.get('template'))
        serializer.save()
        return Response({'success': True, 'report': ReportSerializer(report).data})

    def destroy(self, request, *args, **kwargs):
        report = self.get_object()
        if report.is_locked:
            raise AppError('Cannot delete finalized report')
        study = report.study
        with transaction.atomic():
            report.delete()
            study.status = Study.STATUS_COMPLETED
            study.reported_at = None
            study.save(update_fields=['status', 'reported_at', 'updated_at'])
        return Response({'success': True, 'message': 'Report deleted successfully'})

    @action(detail=True, methods=['put', 'post'])
    def finalize(self, request, pk=None):
        report = self.get_object()
        self._check_owner(report)
        if report.is_locked:
            raise AppError('Report is already finalized')
        if not (report.impression or '').strip():
            raise AppError('Report must have an impression before it can be finalized')
        report.status = Report.STATUS_FINALIZED
        report.finalized_at = timezone.now()
        report.finalized_by = request.user
        report.save(update_fields=['status', 'finalized_at', 'finalized_by', 'updated_at'])
        notifications.notify_report_finalized(report)
        return Response({'success': True, 'message': 'Report finalized successfully', 'report': ReportSerializer(report).data})

    @action(detail=True, methods=['put', 'post'])
    def sign(self, request, pk=None):
        report = self.get_object()
        self._check_owner(report)
        serializer = SignSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        if not report.is_finalized:
            raise AppError('Report must be finalized before signing')
        if report.is_signed:
            raise AppError('Report is already signed')
        report.signature_type = serializer.validated_data['signature_type']
        report.signature_data = serializer.validated_data.get('signature_data', '')
        report.signed_at = timezone.now()
        report.signed_by = request.user
        report.save(update_fields=['signature_type', 'signature_data', 'signed_at', 'signed_by', 'updated_at'])
        return Response({'success': True, 'message': 'Report signed successfully', 'report': ReportSerializer(report).data})

    @action(detail=True, methods=['get', 'post'])
    def revisions(self, request, pk=None):
        report = self.get_object()
        if request.method == 'GET':
            return Response({'current_version': report.version, 'revision_history': report.revision_history})

        self._check_editor(report)
        serializer = RevisionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        snapshot = report.snapshot()
        snapshot.update({
            'revised_at': timezone.now().isoformat(),
            'revised_by': request.user.id,
            'revision_reason': serializer.validated_data['reason'],
        })
        old_values = {field: getattr(report, field) for field in serializer.validated_data['changes']}
        for field, value in serializer.validated_data['changes'].items():
            setattr(report, field, value)
        report.revision_history = [snapshot] + list(report.revision_history)
        report.version += 1
        report.save()
        record_audit(
            'report_revision', user=request.user, request=request, resource_type='reports',
            resource_id=report.id, old_values=old_values, new_values=serializer.validated_data['changes'],
        )
        return Response({'success': True, 'message': 'Report revision created successfully', 'version': report.version})

    @action(detail=True, methods=['post'])
    def annotations(self, request, pk=None):
        report = self.get_object()
        self._check_editor(report)
        serializer = AnnotationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        annotation = {
            'id': uuid.uuid4().hex,
            **serializer.validated_data,
            'created_at': timezone.now().isoformat(),
            'created_by': request.user.id,
        }
        report.annotations = list(report.annotations) + [annotation]
        report.save(update_fields=['annotations', 'updated_at'])
        return Response({'success': True, 'message': 'Annotation added successfully', 'annotation': annotation},
                        status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['put', 'patch', 'delete'], url_path=r'annotations/(?P<annotation_id>[0-9a-fA-F-]+)')
    def annotation_detail(self, request, pk=None, annotation_id=None):
        report = self.get_object()
        self._check_editor(report)
        annotations = list(report.annotations)
        index = next((i for i, item in enumerate(annotations) if item.get('id') == annotation_id), None)
        if index is None:
            raise AppError('Annotation not found', status_code=404)

        if request.method == 'DELETE':
            annotations.pop(index)
            report.annotations = annotations
            report.save(update_fields=['annotations', 'updated_at'])
            return Response({'success': True, 'message': 'Annotation deleted successfully'})

        serializer = AnnotationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        annotations[index] = {
            **annotations[index],
            'data': serializer.validated_data['data'],
            'updated_at': timezone.now().isoformat(),
            'updated_by': request.user.id,
        }
        report.annotations = annotations
        report.save(update_fields=['annotations', 'updated_at'])
        return Response({'success': True, 'message': 'Annotation updated successfully', 'annotation': annotations[index]})

    @action(detail=True, methods=['get'])
    def export(self, request, pk=None):
        report = self.get_object()
        export_format = request.query_params.get('format', 'json').lower()
        if export_format == 'json':
            return Response({'success': True, 'report': report_to_dict(report)})
        if export_format == 'docx':
            response = HttpResponse(build_report_docx(report), content_type=DOCX_CONTENT_TYPE)
            response['Content-Disposition'] = f'attachment; filename=Report_{report.report_number}.docx'
            return response
        raise AppError('Unsupported export format. Use json or docx')

    @action(detail=True, methods=['get'])
    def stats(self, request, pk=None):
        report = self.get_object()
        study = report.study
        timings = {
            'report_creation_time': _milliseconds(report.created_at, study.completed_at),
            'report_finalization_time': _milliseconds(report.finalized_at, report.created_at),
            'signing_time': _milliseconds(report.signed_at, report.finalized_at),
        }
        return Response({
            'stats': {
                'created_at': report.created_at,
                'finalized_at': report.finalized_at,
                'signed_at': report.signed_at,
                'version': report.version,
                'assigned_at': study.assigned_at,
                'started_at': study.started_at,
                'completed_at': study.completed_at,
                'timings': {key: value for key, value in timings.items() if value is not None},
            }
        })


class ReportTemplateViewSet(OrganizationScopedMixin, viewsets.ModelViewSet):
    serializer_class = ReportTemplateSerializer
    filterset_fields = ['modality', 'body_part', 'category', 'language', 'is_active']

    def get_permissions(self):
        if self.action in ('create', 'update', 'partial_update', 'destroy'):
            return [IsAuthenticated(), TemplateEditorPermission()]
        return [IsAuthenticated()]

    def get_queryset(self):
        return ReportTemplate.objects.filter(organization=self.get_organization())

    def _clear_other_defaults(self, template):
        if template.is_default:
            ReportTemplate.objects.filter(
                organization=template.organization, modality=template.modality, is_default=True
            ).exclude(id=template.id).update(is_default=False)

    def perform_create(self, serializer):
        template = serializer.save(organization=self.get_organization(), created_by=self.request.user)
        self._clear_other_defaults(template)

    def perform_update(self, serializer):
        self._clear_other_defaults(serializer.save())


class SLAViewSet(OrganizationScopedMixin, viewsets.ModelViewSet):
    serializer_class = SLASerializer
    permission_classes = [IsAuthenticated, AdminOrManagerPermission]
    filterset_fields = ['priority', 'modality', 'is_active']

    def get_queryset(self):
        return SLA.objects.filter(organization=self.get_organization())

    def perform_create(self, serializer):
        serializer.save(organization=self.get_organization())


class RatingViewSet(OrganizationScopedMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin,
                    mixins.CreateModelMixin, viewsets.GenericViewSet):
    serializer_class = RatingSerializer
    permission_classes = [IsAuthenticated, AdminOrManagerPermission]
    filterset_fields = ['radiologist', 'study', 'rating']

    def get_queryset(self):
        return Rating.objects.filter(study__organization=self.get_organization()).select_related('rated_by')

    def perform_create(self, serializer):
        study = serializer.validated_data['study']
        report = serializer.validated_data.get('report')
        if study.organization_id != self.get_organization().id:
            raise AppError('Study not found', status_code=404)
        if report is not None and report.study_id != study.id:
            raise AppError('Report does not belong to this study')
        radiologist = report.radiologist if report is not None else study.assigned_radiologist
        if radiologist is None:
            raise AppError('Study has no radiologist to rate')
        if Rating.objects.filter(radiologist=radiologist, study=study, rated_by=self.request.user).exists():
            raise Conflict('You have already rated this radiologist for this study')
        serializer.save(radiologist=radiologist, rated_by=self.request.user)


class DisputeViewSet(OrganizationScopedMixin, mixins.ListModelMixin, mixins.RetrieveModelMixin,
                     mixins.CreateModelMixin, mixins.UpdateModelMixin, viewsets.GenericViewSet):
    permission_classes = [IsAuthenticated, AdminOrManagerPermission]
    filterset_fields = ['status', 'priority', 'report', 'study']

    def get_serializer_class(self):
        if self.action in ('update', 'partial_update'):
            return DisputeUpdateSerializer
        return DisputeSerializer

    def get_queryset(self):
        return Dispute.objects.filter(study__organization=self.get_organization()).select_related('report')

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        report = serializer.validated_data['report']
        study = report.study
        if study.organization_id != self.get_organization().id:
            raise AppError('Report not found', status_code=404)
        if not report.is_finalized:
            raise AppError('Only finalized reports can be disputed')
        with transaction.atomic():
            dispute = serializer.save(study=study, raised_by=request.user)
            report.status = Report.STATUS_DISPUTED
            report.save(update_fields=['status', 'updated_at'])
            study.status = Study.STATUS_DISPUTED
            study.save(update_fields=['status', 'updated_at'])
        notifications.notify_dispute(dispute)
        return Response({'success': True, 'dispute': DisputeSerializer(dispute).data}, status=status.HTTP_201_CREATED)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop('partial', False)
        dispute = self.get_object()
        serializer = self.get_serializer(dispute, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        with transaction.atomic():
            dispute = serializer.save()
            if dispute.status in (Dispute.STATUS_RESOLVED, Dispute.STATUS_CLOSED) and dispute.resolved_at is None:
                dispute.resolved_at = timezone.now()
                dispute.resolved_by = request.user
                dispute.save(update_fields=['resolved_at', 'resolved_by', 'updated_at'])
                self._restore_report(dispute)
        return Response({'success': True, 'dispute': DisputeSerializer(dispute).data})

    def _restore_report(self, dispute):
        report = dispute.report
        still_open = report.disputes.filter(
            status__in=[Dispute.STATUS_OPEN, Dispute.STATUS_INVESTIGATING]
        ).exists()
        if still_open or report.status != Report.STATUS_DISPUTED:
            return
        report.status = Report.STATUS_FINALIZED
        report.save(update_fields=['status', 'updated_at'])
        Study.objects.filter(id=dispute.study_id, status=Study.STATUS_DISPUTED).update(
            status=Study.STATUS_REPORTED, updated_at=timezone.now()
        )
