from django.urls import include, path

urlpatterns = [
    path("api/", include("apps.settlement.urls")),
    path("", include("apps.monitoring.urls")),
]
