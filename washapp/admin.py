from django import forms
from django.contrib import admin, messages
from django.db.models import Q
from django.utils import timezone

from .constants import SERVICE_TYPE_CHOICES
from .models import (
    ClientCompany,
    ErrorLog,
    MobileDevice,
    Provider,
    ProviderDecline,
    ProviderRating,
    SchedulerHeartbeat,
    Vehicle,
    WashRequest,
    WashRequestVehicle,
    WorkflowEvent,
)
from .scheduler import get_heartbeat_stale_seconds


class ProviderAdminForm(forms.ModelForm):
    services = forms.MultipleChoiceField(
        choices=SERVICE_TYPE_CHOICES,
        widget=forms.CheckboxSelectMultiple,
        required=False,
    )

    class Meta:
        model = Provider
        fields = "__all__"


@admin.register(ClientCompany)
class ClientCompanyAdmin(admin.ModelAdmin):
    list_display = ("name", "user", "contact", "phone", "email", "created_at")
    search_fields = ("name", "user__username", "contact", "phone", "email")


@admin.register(Provider)
class ProviderAdmin(admin.ModelAdmin):
    form = ProviderAdminForm
    list_display = ("name", "user", "base_city", "radius_km", "services_list", "phone", "rating", "rating_count")
    list_filter = ("base_city",)
    search_fields = ("name", "user__username", "base_city", "phone")

    @admin.display(description="Services")
    def services_list(self, obj):
        return obj.services_display()


@admin.register(Vehicle)
class VehicleAdmin(admin.ModelAdmin):
    list_display = ("license_plate", "brand", "model", "vehicle_type", "year", "client_company")
    list_filter = ("vehicle_type",)
    search_fields = ("license_plate", "brand", "model", "client_company__name")


class WashRequestVehicleInline(admin.TabularInline):
    model = WashRequestVehicle
    extra = 0
    readonly_fields = ("vehicle", "service_type", "position")

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(WashRequest)
class WashRequestAdmin(admin.ModelAdmin):
    list_display = ("id", "client_company", "date_time", "status", "provider", "address", "version", "updated_at")
    list_filter = ("status", "cancelled_by", "date_time")
    search_fields = ("id", "address", "client_company__name", "provider__name")
    list_select_related = ("client_company", "provider")
    date_hierarchy = "date_time"
    inlines = (WashRequestVehicleInline,)
    # Status and provider only change through the lifecycle functions.
    readonly_fields = (
        "status",
        "provider",
        "version",
        "accepted_at",
        "started_at",
        "completed_at",
        "cancelled_at",
        "cancelled_by",
        "created_at",
        "updated_at",
    )


@admin.register(ProviderDecline)
class ProviderDeclineAdmin(admin.ModelAdmin):
    list_display = ("declined_at", "provider", "wash_request", "reason")
    list_filter = ("reason", "declined_at")
    search_fields = ("provider__name", "wash_request__id")
    readonly_fields = ("provider", "wash_request", "reason", "declined_at")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ProviderRating)
class ProviderRatingAdmin(admin.ModelAdmin):
    list_display = ("wash_request", "provider", "client_company", "score", "created_at")
    list_filter = ("score",)
    search_fields = ("wash_request__id", "provider__name", "client_company__name", "comment")


@admin.register(WorkflowEvent)
class WorkflowEventAdmin(admin.ModelAdmin):
    list_display = ("created_at", "wash_request", "from_status", "to_status", "actor_role", "actor_user", "source", "note")
    list_filter = ("actor_role", "source", "from_status", "to_status", "created_at")
    search_fields = ("wash_request__id", "actor_user__username", "note")
    list_select_related = ("wash_request", "actor_user")
    date_hierarchy = "created_at"
    ordering = ("-created_at", "-id")
    readonly_fields = (
        "wash_request",
        "from_status",
        "to_status",
        "actor_user",
        "actor_role",
        "source",
        "note",
        "created_at",
    )

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(SchedulerHeartbeat)
class SchedulerHeartbeatAdmin(admin.ModelAdmin):
    list_display = ("worker_name", "run_count", "last_success_at", "last_error_at", "healthy", "updated_at")
    search_fields = ("worker_name", "last_error")
    readonly_fields = (
        "worker_name",
        "run_count",
        "last_started_at",
        "last_success_at",
        "last_error_at",
        "last_error",
        "updated_at",
    )

    @admin.display(boolean=True, description="Healthy")
    def healthy(self, obj):
        reference_at = obj.last_success_at or obj.last_started_at or obj.updated_at
        if not reference_at:
            return False
        return (timezone.now() - reference_at).total_seconds() <= get_heartbeat_stale_seconds()

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(MobileDevice)
class MobileDeviceAdmin(admin.ModelAdmin):
    list_display = ("user", "platform", "device_id", "app_version", "locale", "last_seen_at")
    list_filter = ("platform", "last_seen_at")
    search_fields = ("user__username", "device_id", "push_token")
    readonly_fields = ("created_at", "last_seen_at")


API_AREA_PREFIXES = (
    ("client", "Client API", ("/api/client/",)),
    ("provider", "Provider API", ("/api/provider/",)),
    ("account", "Login & devices", ("/api/auth/", "/api/me/", "/api/devices/")),
    ("lifecycle", "Lifecycle health", ("/api/health/",)),
)


def api_area_for_path(path):
    for key, _label, prefixes in API_AREA_PREFIXES:
        if (path or "").startswith(prefixes):
            return key
    return "other"


class ApiAreaFilter(admin.SimpleListFilter):
    title = "API area"
    parameter_name = "area"

    def lookups(self, request, model_admin):
        return [(key, label) for key, label, _prefixes in API_AREA_PREFIXES] + [("other", "Other")]

    def queryset(self, request, queryset):
        value = self.value()
        if not value:
            return queryset
        all_prefixes = [prefix for _key, _label, prefixes in API_AREA_PREFIXES for prefix in prefixes]
        if value == "other":
            for prefix in all_prefixes:
                queryset = queryset.exclude(path__startswith=prefix)
            return queryset
        for key, _label, prefixes in API_AREA_PREFIXES:
            if key == value:
                area_filter = Q()
                for prefix in prefixes:
                    area_filter |= Q(path__startswith=prefix)
                return queryset.filter(area_filter)
        return queryset


@admin.register(ErrorLog)
class ErrorLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "api_area", "status_code", "method", "path", "user", "is_resolved")
    list_filter = (ApiAreaFilter, "status_code", "resolved_at")
    search_fields = ("path", "message", "request_id", "user__username")
    readonly_fields = [field.name for field in ErrorLog._meta.fields if field.name != "resolved_at"]
    actions = ("mark_resolved",)

    @admin.display(description="Area")
    def api_area(self, obj):
        return api_area_for_path(obj.path)

    @admin.action(description="Mark selected errors as resolved")
    def mark_resolved(self, request, queryset):
        updated_count = queryset.filter(resolved_at__isnull=True).update(resolved_at=timezone.now())
        self.message_user(request, f"{updated_count} error(s) marked as resolved.", level=messages.SUCCESS)

    def has_add_permission(self, request):
        return False
