# config/urls.py
from django.contrib import admin
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

from apps.core.views import health_check

urlpatterns = [
    # Monitoring
    path('', include('django_prometheus.urls')),
    path('health/', health_check),
    
    # Admin
    path('admin/', admin.site.urls),

    # API V1 Routes
    path('api/v1/merchants/', include('apps.merchants.urls')),

    # API Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
]
