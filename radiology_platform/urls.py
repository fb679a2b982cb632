from django.contrib import admin
from django.urls import path, include
from django.conf import settings
from django.conf.urls.static import static
from django.http import JsonResponse
import django.utils.timezone as timezone


def api_home(request):
    """API home endpoint"""
    return JsonResponse({
        'message': 'Radiology Platform API Server',
        'version': '1.0',
        'status': 'running',
        'endpoints': {
            'auth': '/api/auth/',
            'users': '/api/users/',
            'organizations': '/api/organizations/',
            'studies': '/api/studies/',
            'dicom_upload': '/api/dicom/upload/',
            'reports': '/api/reports/',
            'report_templates': '/api/report-templates/',
            'slas': '/api/slas/',
            'ratings': '/api/ratings/',
            'disputes': '/api/disputes/',
            'billing': '/api/billing/',
            'notifications': '/api/notifications/',
            'viewer': '/api/viewer/dicomlibrary/',
            'websocket': '/ws/notifications/',
            'admin': '/admin/'
        }
    })


def health_check(request):
    """Health check endpoint"""
    return JsonResponse({
        'status': 'healthy',
        'message': 'API is running',
        'timestamp': timezone.now().isoformat()
    })


urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/', include('workflow.urls')),
    path('health/', health_check, name='health_check'),
    path('api-info/', api_home, name='api_home'),
]


if settings.DEBUG:
    urlpatterns += static(settings.STATIC_URL, document_root=settings.STATIC_ROOT)
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
