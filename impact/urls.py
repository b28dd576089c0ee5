from django.urls import path

from field_resources.api import api

urlpatterns = [
    path("api/", api.urls),
]
