from django.urls import path, include
from rest_framework.routers import DefaultRouter

from . import account_views, viewer, views
from .account_views import InvoiceViewSet, NotificationViewSet, UserViewSet
from .views import (
    DisputeViewSet, RatingViewSet, ReportTemplateViewSet, ReportViewSet, SLAViewSet, StudyViewSet
)

router = DefaultRouter()
router.register(r'users', UserViewSet, basename='user')
router.register(r'studies', StudyViewSet, basename='study')
router.register(r'reports', ReportViewSet, basename='report')
router.register(r'report-templates', ReportTemplateViewSet, basename='report-template')
router.register(r'slas', SLAViewSet, basename='sla')
router.register(r'ratings', RatingViewSet, basename='rating')
router.register(r'disputes', DisputeViewSet, basename='dispute')
router.register(r'billing', InvoiceViewSet, basename='invoice')
router.register(r'notifications', NotificationViewSet, basename='notification')

urlpatterns = [
    path('auth/register/', account_views.register, name='register'),
    path('auth/login/', account_views.login, name='login'),
    path('auth/refresh/', account_views.refresh, name='refresh'),
    path('auth/logout/', account_views.logout, name='logout'),
    path('auth/me/', account_views.me, name='me'),
    path('auth/verify-email/', account_views.verify_email, name='verify_email'),
    path('auth/forgot-password/', account_views.forgot_password, name='forgot_password'),
    path('auth/reset-password/', account_views.reset_password, name='reset_password'),

    path('organizations/', account_views.create_organization, name='create_organization'),
    path('organizations/current/', account_views.current_organization, name='current_organization'),
    path('organizations/stats/', account_views.organization_stats, name='organization_stats'),
    path('organizations/users/', account_views.organization_users, name='organization_users'),

    path('dicom/upload/', views.dicom_upload, name='dicom_upload'),
    path('dicom/instances/<int:instance_id>/file/', views.instance_file, name='instance_file'),
    path('dicom/instances/<int:instance_id>/thumbnail/', views.instance_thumbnail, name='instance_thumbnail'),

    path('viewer/dicomlibrary/config/', viewer.config, name='viewer_config'),
    path('viewer/dicomlibrary/studies/', viewer.studies, name='viewer_studies'),
    path('viewer/dicomlibrary/studies/<str:study_uid>/series/', viewer.series, name='viewer_series'),
    path('viewer/dicomlibrary/studies/<str:study_uid>/series/<str:series_uid>/instances/',
         viewer.instances, name='viewer_instances'),
    path('viewer/dicomlibrary/studies/<str:study_uid>/metadata/', viewer.metadata, name='viewer_metadata'),
    path('viewer/dicomlibrary/studies/<str:study_uid>/bulkdata/', viewer.bulk_data, name='viewer_bulk_data'),
    path('viewer/dicomlibrary/studies/<str:study_uid>/download/',
         viewer.download_instructions, name='viewer_download'),

    path('', include(router.urls)),
]
