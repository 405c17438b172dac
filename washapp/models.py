from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Avg, Count, Q
from django.utils import timezone

from .constants import (
    DECLINE_REASON_CANCELLED,
    DECLINE_REASON_DECLINED,
    PROVIDER_BOUND_STATUSES,
    SERVICE_TYPE_CHOICES,
    SERVICE_TYPES,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    TERMINAL_STATUSES,
)


class ClientCompany(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="client_company")
    name = models.CharField(max_length=160)
    address = models.CharField(max_length=255, blank=True)
    contact = models.CharField(max_length=120, blank=True)
    phone = models.CharField(max_length=30, blank=True)
    email = models.EmailField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "client companies"

    def __str__(self):
        return self.name

    def notification_email(self):
        return self.email or getattr(self.user, "email", "") or ""


class Provider(models.Model):
    user = models.OneToOneField(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="provider_profile",
    )
    name = models.CharField(max_length=120)
    base_city = models.CharField(max_length=80)
    radius_km = models.PositiveIntegerField(default=20)
    services = models.JSONField(default=list, blank=True)
    phone = models.CharField(max_length=30, blank=True)
    description = models.TextField(blank=True)
    rating = models.DecimalField(max_digits=2, decimal_places=1, null=True, blank=True)
    rating_count = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return self.name

    def clean(self):
        unknown = [item for item in (self.services or []) if item not in SERVICE_TYPES]
        if unknown:
            raise ValidationError({"services": f"Unknown service types: {', '.join(unknown)}"})

    def offered_services(self):
        return {item for item in (self.services or []) if item in SERVICE_TYPES}

    def services_display(self):
        labels = dict(SERVICE_TYPE_CHOICES)
        return ", ".join(labels[item] for item in SERVICE_TYPES if item in self.offered_services())

    def notification_email(self):
        if self.user_id:
            return self.user.email or ""
        return ""


class Vehicle(models.Model):
    client_company = models.ForeignKey(ClientCompany, on_delete=models.CASCADE, related_name="vehicles")
    license_plate = models.CharField(max_length=20)
    brand = models.CharField(max_length=60)
    model = models.CharField(max_length=60)
    vehicle_type = models.CharField(max_length=40, blank=True)
    year = models.PositiveSmallIntegerField(null=True, blank=True)
    image_url = models.URLField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["license_plate"]
        unique_together = ("client_company", "license_plate")

    def __str__(self):
        return f"{self.license_plate} ({self.brand} {self.model})"


class WashRequest(models.Model):
    STATUS_CHOICES = (
        (STATUS_PENDING, "Pending"),
        (STATUS_ACCEPTED, "Accepted"),
        (STATUS_IN_PROGRESS, "In progress"),
        (STATUS_COMPLETED, "Completed"),
        (STATUS_CANCELLED, "Cancelled"),
    )
    CANCELLED_BY_CHOICES = (
        ("client", "Client"),
        ("system", "Expiry"),
    )

    client_company = models.ForeignKey(ClientCompany, on_delete=models.CASCADE, related_name="wash_requests")
    provider = models.ForeignKey(
        Provider,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="wash_requests",
    )
    address = models.CharField(max_length=255)
    date_time = models.DateTimeField(db_index=True)
    notes = models.TextField(blank=True)
    invoice_url = models.URLField(max_length=500, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_PENDING, db_index=True)
    version = models.PositiveIntegerField(default=1)
    accepted_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=20, choices=CANCELLED_BY_CHOICES, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["date_time", "id"]
        indexes = [
            models.Index(fields=["status", "date_time"], name="washreq_status_date_idx"),
            models.Index(fields=["client_company", "status"], name="washreq_client_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(status__in=sorted(PROVIDER_BOUND_STATUSES), provider__isnull=False)
                    | (~Q(status__in=sorted(PROVIDER_BOUND_STATUSES)) & Q(provider__isnull=True))
                ),
                name="wash_request_provider_binding",
            ),
            models.CheckConstraint(
                condition=Q(invoice_url="") | Q(status=STATUS_COMPLETED),
                name="wash_request_invoice_after_completion",
            ),
        ]

    def __str__(self):
        return f"Wash request #{self.id} {self.address} ({self.status})"

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def required_services(self):
        return {entry.service_type for entry in self.vehicles.all()}


class WashRequestVehicle(models.Model):
    wash_request = models.ForeignKey(WashRequest, on_delete=models.CASCADE, related_name="vehicles")
    vehicle = models.ForeignKey(Vehicle, on_delete=models.PROTECT, related_name="wash_request_entries")
    service_type = models.CharField(max_length=20, choices=SERVICE_TYPE_CHOICES)
    position = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["wash_request_id", "position", "id"]
        unique_together = ("wash_request", "vehicle")

    def __str__(self):
        return f"Request #{self.wash_request_id} -> {self.vehicle_id} ({self.service_type})"


class ProviderDecline(models.Model):
    REASON_CHOICES = (
        (DECLINE_REASON_DECLINED, "Declined"),
        (DECLINE_REASON_CANCELLED, "Cancelled after accepting"),
    )

    provider = models.ForeignKey(Provider, on_delete=models.CASCADE, related_name="declines")
    wash_request = models.ForeignKey(WashRequest, on_delete=models.CASCADE, related_name="declines")
    reason = models.CharField(max_length=20, choices=REASON_CHOICES, default=DECLINE_REASON_DECLINED)
    declined_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-declined_at", "-id"]
        constraints = [
            models.UniqueConstraint(fields=["provider", "wash_request"], name="provider_decline_unique_pair"),
        ]

    def __str__(self):
        return f"{self.provider.name} x request #{self.wash_request_id} ({self.reason})"


class ProviderRating(models.Model):
    SCORE_CHOICES = (
        (1, "1"),
        (2, "2"),
        (3, "3"),
        (4, "4"),
        (5, "5"),
    )

    provider = models.ForeignKey(Provider, on_delete=models.CASCADE, related_name="ratings")
    client_company = models.ForeignKey(ClientCompany, on_delete=models.CASCADE, related_name="provider_ratings")
    wash_request = models.OneToOneField(WashRequest, on_delete=models.CASCADE, related_name="rating")
    score = models.PositiveSmallIntegerField(choices=SCORE_CHOICES)
    comment = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.client_company.name} -> {self.provider.name} / request {self.wash_request_id}: {self.score}"

    @staticmethod
    def refresh_provider_average(provider_id):
        summary = ProviderRating.objects.filter(provider_id=provider_id).aggregate(
            avg_value=Avg("score"),
            total=Count("id"),
        )
        avg_score = summary.get("avg_value")
        Provider.objects.filter(id=provider_id).update(
            rating=round(avg_score, 1) if avg_score is not None else None,
            rating_count=summary.get("total") or 0,
        )

    def save(self, *args, **kwargs):
        super().save(*args, **kwargs)
        ProviderRating.refresh_provider_average(self.provider_id)

    def delete(self, *args, **kwargs):
        provider_id = self.provider_id
        super().delete(*args, **kwargs)
        ProviderRating.refresh_provider_average(provider_id)


class WorkflowEvent(models.Model):
    ACTOR_ROLE_CHOICES = (
        ("client", "Client"),
        ("provider", "Provider"),
        ("system", "System"),
    )
    SOURCE_CHOICES = (
        ("user", "User"),
        ("sweeper", "Expiry sweep"),
        ("system", "System"),
    )

    wash_request = models.ForeignKey(
        WashRequest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    from_status = models.CharField(max_length=30)
    to_status = models.CharField(max_length=30)
    actor_user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    actor_role = models.CharField(max_length=20, choices=ACTOR_ROLE_CHOICES, default="system")
    source = models.CharField(max_length=20, choices=SOURCE_CHOICES, default="system")
    note = models.CharField(max_length=240, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["wash_request", "created_at"], name="wfevent_request_created_idx"),
        ]

    def __str__(self):
        return f"request {self.wash_request_id}: {self.from_status} -> {self.to_status}"


class MobileDevice(models.Model):
    PLATFORM_CHOICES = (
        ("ios", "iOS"),
        ("android", "Android"),
        ("web", "Web"),
    )

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="mobile_devices")
    platform = models.CharField(max_length=20, choices=PLATFORM_CHOICES)
    device_id = models.CharField(max_length=120)
    push_token = models.CharField(max_length=255, null=True, blank=True, unique=True)
    app_version = models.CharField(max_length=40, blank=True)
    locale = models.CharField(max_length=20, blank=True)
    timezone = models.CharField(max_length=60, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    last_seen_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-last_seen_at", "-id"]
        unique_together = ("user", "platform", "device_id")

    def __str__(self):
        return f"{self.user.username} {self.platform} {self.device_id}"


class SchedulerHeartbeat(models.Model):
    worker_name = models.CharField(max_length=80, unique=True)
    run_count = models.PositiveIntegerField(default=0)
    last_started_at = models.DateTimeField(null=True, blank=True)
    last_success_at = models.DateTimeField(null=True, blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=240, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["worker_name"]

    def __str__(self):
        return f"{self.worker_name} ({self.run_count})"


class SchedulerLock(models.Model):
    worker_name = models.CharField(max_length=80, unique=True)
    lock_owner = models.CharField(max_length=64, blank=True)
    locked_until = models.DateTimeField(null=True, blank=True)
    last_acquired_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["worker_name"]

    def __str__(self):
        return f"{self.worker_name} lock"


class ErrorLog(models.Model):
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    path = models.CharField(max_length=300, blank=True)
    method = models.CharField(max_length=10, blank=True)
    status_code = models.PositiveSmallIntegerField(default=500)
    message = models.CharField(max_length=500)
    traceback = models.TextField(blank=True)
    request_id = models.CharField(max_length=120, blank=True, db_index=True)
    ip_address = models.CharField(max_length=64, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="error_logs",
    )

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status_code", "created_at"], name="errorlog_status_created_idx"),
            models.Index(fields=["resolved_at", "created_at"], name="errorlog_resolved_created_idx"),
        ]

    def __str__(self):
        return f"{self.status_code} {self.message[:80]}"

    @property
    def is_resolved(self):
        return self.resolved_at is not None
