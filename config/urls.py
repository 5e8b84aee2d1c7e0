from django.http import HttpResponse, JsonResponse
from django.urls import path

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


def health_view(request):
    return JsonResponse({"status": "ok"})


def metrics_view(request):
    return HttpResponse(generate_latest(), content_type=CONTENT_TYPE_LATEST)


urlpatterns = [
    path("health", health_view, name="health"),
    path("metrics", metrics_view, name="metrics"),
]
