from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from .api_views import (
    ClientInvoicesView,
    ClientRequestCancelView,
    ClientRequestDetailView,
    ClientRequestRatingView,
    ClientRequestsView,
    ClientVehiclesView,
    DeviceRegisterView,
    LifecycleHealthView,
    LoginView,
    MeView,
    ProviderInvoicesView,
    ProviderJobsView,
    ProviderRequestActionView,
    ProviderRequestDetailView,
    ProviderRequestInvoiceView,
    ProviderRequestsView,
)


urlpatterns = [
    path("auth/login/", LoginView.as_view(), name="api_login"),
    path("auth/refresh/", TokenRefreshView.as_view(), name="api_token_refresh"),
    path("me/", MeView.as_view(), name="api_me"),
    path("devices/register/", DeviceRegisterView.as_view(), name="api_device_register"),
    path("client/vehicles/", ClientVehiclesView.as_view(), name="api_client_vehicles"),
    path("client/requests/", ClientRequestsView.as_view(), name="api_client_requests"),
    path("client/requests/<int:request_id>/", ClientRequestDetailView.as_view(), name="api_client_request_detail"),
    path("client/requests/<int:request_id>/cancel/", ClientRequestCancelView.as_view(), name="api_client_request_cancel"),
    path("client/requests/<int:request_id>/rating/", ClientRequestRatingView.as_view(), name="api_client_request_rating"),
    path("client/invoices/", ClientInvoicesView.as_view(), name="api_client_invoices"),
    path("provider/requests/", ProviderRequestsView.as_view(), name="api_provider_requests"),
    path("provider/requests/<int:request_id>/", ProviderRequestDetailView.as_view(), name="api_provider_request_detail"),
    path(
        "provider/requests/<int:request_id>/invoice/",
        ProviderRequestInvoiceView.as_view(),
        name="api_provider_request_invoice",
    ),
    path(
        "provider/requests/<int:request_id>/<str:action>/",
        ProviderRequestActionView.as_view(),
        name="api_provider_request_action",
    ),
    path("provider/jobs/", ProviderJobsView.as_view(), name="api_provider_jobs"),
    path("provider/invoices/", ProviderInvoicesView.as_view(), name="api_provider_invoices"),
    path("health/lifecycle/", LifecycleHealthView.as_view(), name="api_lifecycle_health"),
]
