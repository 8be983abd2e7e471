"""
URL configuration for Qonnect project
"""

from django.urls import path, include
from django.http import HttpResponse


def empty_favicon(_request):
    # Return an empty response to avoid 404 noise from captive browsers
    return HttpResponse(status=204)


urlpatterns = [
    path("api/", include("hotspot.urls")),
    path("favicon.ico", empty_favicon),
]
