import logging

from django.db import transaction
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework_simplejwt.tokens import RefreshToken

from . import lifecycle, listings
from .exceptions import WashRequestError, forbidden
from .identity import get_client_company_for_user, get_provider_for_user, infer_actor_role
from .models import MobileDevice, Vehicle
from .scheduler import LIFECYCLE_WORKER_NAME, get_health_token, heartbeat_status
from .serializers import (
    DeviceRegistrationSerializer,
    InvoiceSerializer,
    LoginSerializer,
    RatingSerializer,
    VehicleSerializer,
    VisibleRequestSerializer,
    WashRequestCreateSerializer,
    WashRequestSerializer,
    WashRequestUpdateSerializer,
)
from .store import UNSET

logger = logging.getLogger(__name__)


def error_response(exc):
    return Response(exc.as_payload(), status=exc.status_code)


def api_exception_handler(exc, context):
    if isinstance(exc, WashRequestError):
        if exc.status_code >= 500:
            logger.warning("API call %s failed: %s", context.get("view").__class__.__name__, exc)
        return error_response(exc)
    return drf_exception_handler(exc, context)


def require_client_company(request):
    client_company = get_client_company_for_user(request.user)
    if client_company is None:
        raise forbidden("Only client company accounts can do that.")
    return client_company


def require_provider(request):
    provider = get_provider_for_user(request.user)
    if provider is None:
        raise forbidden("Only provider accounts can do that.")
    return provider


def parse_paging(request, default_limit=20):
    limit_raw = (request.GET.get("limit") or str(default_limit)).strip()
    offset_raw = (request.GET.get("offset") or "0").strip()
    limit = min(100, max(1, int(limit_raw) if limit_raw.isdigit() else default_limit))
    offset = max(0, int(offset_raw) if offset_raw.isdigit() else 0)
    return limit, offset


def paged_response(request, items, serializer_class):
    limit, offset = parse_paging(request)
    page_items = items[offset : offset + limit]
    return Response(
        {
            "count": len(items),
            "offset": offset,
            "limit": limit,
            "results": serializer_class(page_items, many=True).data,
        },
        status=status.HTTP_200_OK,
    )


def parse_status_filter(request):
    raw = (request.GET.get("status") or "").strip()
    return [item.strip() for item in raw.split(",") if item.strip()] or None


def build_identity_payload(user):
    provider = get_provider_for_user(user)
    client_company = get_client_company_for_user(user)
    payload = {
        "id": user.id,
        "username": user.username,
        "email": user.email or "",
        "role": infer_actor_role(user),
        "provider": None,
        "client_company": None,
    }
    if provider:
        payload["provider"] = {
            "id": provider.id,
            "name": provider.name,
            "base_city": provider.base_city,
            "radius_km": provider.radius_km,
            "services": sorted(provider.offered_services()),
            "phone": provider.phone,
            "rating": float(provider.rating) if provider.rating is not None else None,
            "rating_count": provider.rating_count,
        }
    elif client_company:
        payload["client_company"] = {
            "id": client_company.id,
            "name": client_company.name,
            "address": client_company.address,
            "contact": client_company.contact,
            "phone": client_company.phone,
            "email": client_company.email,
        }
    return payload


class LoginView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = LoginSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]
        refresh = RefreshToken.for_user(user)
        return Response(
            {
                "access": str(refresh.access_token),
                "refresh": str(refresh),
                "user": build_identity_payload(user),
            },
            status=status.HTTP_200_OK,
        )


class MeView(APIView):
    def get(self, request):
        return Response({"user": build_identity_payload(request.user)}, status=status.HTTP_200_OK)


class DeviceRegisterView(APIView):
    def post(self, request):
        serializer = DeviceRegistrationSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data

        platform = validated["platform"]
        device_id = validated["device_id"]
        push_token = validated.get("push_token")

        with transaction.atomic():
            if push_token:
                # A token moves with the app install; detach it from any older device row.
                MobileDevice.objects.filter(push_token=push_token).exclude(
                    user=request.user,
                    platform=platform,
                    device_id=device_id,
                ).update(push_token=None)
            device, created = MobileDevice.objects.update_or_create(
                user=request.user,
                platform=platform,
                device_id=device_id,
                defaults={
                    "push_token": push_token,
                    "app_version": (validated.get("app_version") or "").strip(),
                    "locale": (validated.get("locale") or "").strip(),
                    "timezone": (validated.get("timezone") or "").strip(),
                },
            )

        return Response(
            {
                "ok": True,
                "created": created,
                "device": {
                    "id": device.id,
                    "platform": device.platform,
                    "device_id": device.device_id,
                    "app_version": device.app_version,
                    "last_seen_at": device.last_seen_at,
                },
            },
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class ClientVehiclesView(APIView):
    def get(self, request):
        client_company = require_client_company(request)
        vehicles = Vehicle.objects.filter(client_company=client_company)
        return Response({"results": VehicleSerializer(vehicles, many=True).data}, status=status.HTTP_200_OK)

    def post(self, request):
        client_company = require_client_company(request)
        serializer = VehicleSerializer(data=request.data, context={"client_company": client_company})
        serializer.is_valid(raise_exception=True)
        vehicle = serializer.save(client_company=client_company)
        return Response(VehicleSerializer(vehicle).data, status=status.HTTP_201_CREATED)


class ClientRequestsView(APIView):
    def get(self, request):
        client_company = require_client_company(request)
        items = listings.list_client_requests(client_company, statuses=parse_status_filter(request))
        return paged_response(request, items, WashRequestSerializer)

    def post(self, request):
        client_company = require_client_company(request)
        serializer = WashRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data
        wash_request = lifecycle.create_wash_request(
            client_company,
            address=validated["address"],
            date_time=validated["date_time"],
            notes=validated.get("notes", ""),
            vehicle_assignments=[
                {"vehicle_id": item["vehicle_id"], "service_type": item["service_type"]}
                for item in validated["vehicles"]
            ],
            actor_user=request.user,
        )
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_201_CREATED)


class ClientRequestDetailView(APIView):
    def get(self, request, request_id):
        client_company = require_client_company(request)
        wash_request = listings.get_client_request(client_company, request_id)
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_200_OK)

    def patch(self, request, request_id):
        client_company = require_client_company(request)
        serializer = WashRequestUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data
        wash_request = lifecycle.update_wash_request_details(
            request_id,
            client_company,
            address=validated.get("address", UNSET),
            date_time=validated.get("date_time", UNSET),
            notes=validated.get("notes", UNSET),
        )
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_200_OK)

    def delete(self, request, request_id):
        client_company = require_client_company(request)
        lifecycle.delete_wash_request(request_id, client_company)
        return Response(status=status.HTTP_204_NO_CONTENT)


class ClientRequestCancelView(APIView):
    def post(self, request, request_id):
        client_company = require_client_company(request)
        wash_request = lifecycle.cancel_by_client(request_id, client_company, actor_user=request.user)
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_200_OK)


class ClientRequestRatingView(APIView):
    def post(self, request, request_id):
        client_company = require_client_company(request)
        serializer = RatingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        rating = lifecycle.rate_provider(
            request_id,
            client_company,
            serializer.validated_data["score"],
            serializer.validated_data.get("comment", ""),
        )
        return Response(
            {"ok": True, "score": rating.score, "provider_id": rating.provider_id},
            status=status.HTTP_201_CREATED,
        )


class ClientInvoicesView(APIView):
    def get(self, request):
        client_company = require_client_company(request)
        return paged_response(request, listings.list_client_invoices(client_company), WashRequestSerializer)


class ProviderRequestsView(APIView):
    def get(self, request):
        provider = require_provider(request)
        visible = listings.list_visible_requests(provider)
        return paged_response(request, visible, VisibleRequestSerializer)


class ProviderRequestDetailView(APIView):
    def get(self, request, request_id):
        provider = require_provider(request)
        wash_request = listings.get_provider_request(provider, request_id)
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_200_OK)


class ProviderRequestActionView(APIView):
    actions = {
        "accept": lifecycle.accept_wash_request,
        "start": lifecycle.start_wash_request,
        "complete": lifecycle.complete_wash_request,
        "cancel": lifecycle.cancel_by_provider,
    }

    def post(self, request, request_id, action):
        provider = require_provider(request)
        if action == "decline":
            wash_request = lifecycle.decline_wash_request(request_id, provider)
            return Response({"ok": True, "id": wash_request.id, "declined": True}, status=status.HTTP_200_OK)

        handler = self.actions.get(action)
        if handler is None:
            return Response({"detail": "unknown-action"}, status=status.HTTP_404_NOT_FOUND)
        wash_request = handler(request_id, provider, actor_user=request.user)
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_200_OK)


class ProviderRequestInvoiceView(APIView):
    def post(self, request, request_id):
        provider = require_provider(request)
        serializer = InvoiceSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        wash_request = lifecycle.attach_invoice(request_id, provider, serializer.validated_data["invoice_url"])
        return Response(WashRequestSerializer(wash_request).data, status=status.HTTP_200_OK)


class ProviderJobsView(APIView):
    def get(self, request):
        provider = require_provider(request)
        items = listings.list_provider_jobs(provider, statuses=parse_status_filter(request))
        return paged_response(request, items, WashRequestSerializer)


class ProviderInvoicesView(APIView):
    def get(self, request):
        provider = require_provider(request)
        return paged_response(request, listings.list_provider_invoices(provider), WashRequestSerializer)


class LifecycleHealthView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def get(self, request):
        expected_token = get_health_token()
        if expected_token:
            provided_token = (request.headers.get("X-Health-Token") or request.GET.get("token") or "").strip()
            if provided_token != expected_token:
                return Response({"ok": False, "detail": "forbidden"}, status=status.HTTP_403_FORBIDDEN)

        worker_name = (request.GET.get("worker") or LIFECYCLE_WORKER_NAME).strip()[:80] or LIFECYCLE_WORKER_NAME
        payload = heartbeat_status(worker_name)
        response = Response(payload, status=status.HTTP_200_OK if payload["ok"] else status.HTTP_503_SERVICE_UNAVAILABLE)
        response["Cache-Control"] = "no-cache, no-store, must-revalidate"
        return response
