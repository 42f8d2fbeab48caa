"""
URL configuration for the escrow app.

Routes:
    - /contracts/ - Contract API (see escrow.views)
    - POST /webhooks/<provider>/ - Provider notification endpoint

All routes are prefixed with /api/v1/escrow/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("escrow/", include("escrow.urls")),
    ]
"""

from django.urls import path
from rest_framework.routers import DefaultRouter

from escrow.views import ContractViewSet
from escrow.webhooks.views import provider_webhook

app_name = "escrow"

router = DefaultRouter()
router.register("contracts", ContractViewSet, basename="contract")

urlpatterns = [
    path("webhooks/<str:provider>/", provider_webhook, name="provider_webhook"),
    *router.urls,
]
