import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ClientCompany",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=160)),
                ("address", models.CharField(blank=True, max_length=255)),
                ("contact", models.CharField(blank=True, max_length=120)),
                ("phone", models.CharField(blank=True, max_length=30)),
                ("email", models.EmailField(blank=True, max_length=254)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="client_company",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "client companies",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Provider",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=120)),
                ("base_city", models.CharField(max_length=80)),
                ("radius_km", models.PositiveIntegerField(default=20)),
                ("services", models.JSONField(blank=True, default=list)),
                ("phone", models.CharField(blank=True, max_length=30)),
                ("description", models.TextField(blank=True)),
                ("rating", models.DecimalField(blank=True, decimal_places=1, max_digits=2, null=True)),
                ("rating_count", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="provider_profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="SchedulerHeartbeat",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("worker_name", models.CharField(max_length=80, unique=True)),
                ("run_count", models.PositiveIntegerField(default=0)),
                ("last_started_at", models.DateTimeField(blank=True, null=True)),
                ("last_success_at", models.DateTimeField(blank=True, null=True)),
                ("last_error_at", models.DateTimeField(blank=True, null=True)),
                ("last_error", models.CharField(blank=True, max_length=240)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["worker_name"],
            },
        ),
        migrations.CreateModel(
            name="SchedulerLock",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("worker_name", models.CharField(max_length=80, unique=True)),
                ("lock_owner", models.CharField(blank=True, max_length=64)),
                ("locked_until", models.DateTimeField(blank=True, null=True)),
                ("last_acquired_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["worker_name"],
            },
        ),
        migrations.CreateModel(
            name="Vehicle",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("license_plate", models.CharField(max_length=20)),
                ("brand", models.CharField(max_length=60)),
                ("model", models.CharField(max_length=60)),
                ("vehicle_type", models.CharField(blank=True, max_length=40)),
                ("year", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("image_url", models.URLField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "client_company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="vehicles",
                        to="washapp.clientcompany",
                    ),
                ),
            ],
            options={
                "ordering": ["license_plate"],
                "unique_together": {("client_company", "license_plate")},
            },
        ),
        migrations.CreateModel(
            name="WashRequest",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("address", models.CharField(max_length=255)),
                ("date_time", models.DateTimeField(db_index=True)),
                ("notes", models.TextField(blank=True)),
                ("invoice_url", models.URLField(blank=True, max_length=500)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("accepted", "Accepted"),
                            ("in_progress", "In progress"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("version", models.PositiveIntegerField(default=1)),
                ("accepted_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "cancelled_by",
                    models.CharField(blank=True, choices=[("client", "Client"), ("system", "Expiry")], max_length=20),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "client_company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="wash_requests",
                        to="washapp.clientcompany",
                    ),
                ),
                (
                    "provider",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wash_requests",
                        to="washapp.provider",
                    ),
                ),
            ],
            options={
                "ordering": ["date_time", "id"],
                "indexes": [
                    models.Index(fields=["status", "date_time"], name="washreq_status_date_idx"),
                    models.Index(fields=["client_company", "status"], name="washreq_client_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("provider__isnull", False), ("status__in", ["accepted", "completed", "in_progress"])),
                            models.Q(
                                models.Q(("status__in", ["accepted", "completed", "in_progress"]), _negated=True),
                                ("provider__isnull", True),
                            ),
                            _connector="OR",
                        ),
                        name="wash_request_provider_binding",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("invoice_url", ""), ("status", "completed"), _connector="OR"),
                        name="wash_request_invoice_after_completion",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WashRequestVehicle",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "service_type",
                    models.CharField(
                        choices=[
                            ("exterior", "Exterior wash"),
                            ("interior", "Interior cleaning"),
                            ("complete", "Complete wash"),
                        ],
                        max_length=20,
                    ),
                ),
                ("position", models.PositiveSmallIntegerField(default=0)),
                (
                    "vehicle",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="wash_request_entries",
                        to="washapp.vehicle",
                    ),
                ),
                (
                    "wash_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="vehicles",
                        to="washapp.washrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["wash_request_id", "position", "id"],
                "unique_together": {("wash_request", "vehicle")},
            },
        ),
        migrations.CreateModel(
            name="ProviderDecline",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "reason",
                    models.CharField(
                        choices=[("declined", "Declined"), ("cancelled", "Cancelled after accepting")],
                        default="declined",
                        max_length=20,
                    ),
                ),
                ("declined_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "provider",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="declines",
                        to="washapp.provider",
                    ),
                ),
                (
                    "wash_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="declines",
                        to="washapp.washrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["-declined_at", "-id"],
                "constraints": [
                    models.UniqueConstraint(fields=("provider", "wash_request"), name="provider_decline_unique_pair"),
                ],
            },
        ),
        migrations.CreateModel(
            name="ProviderRating",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("score", models.PositiveSmallIntegerField(choices=[(1, "1"), (2, "2"), (3, "3"), (4, "4"), (5, "5")])),
                ("comment", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "client_company",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="provider_ratings",
                        to="washapp.clientcompany",
                    ),
                ),
                (
                    "provider",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="ratings",
                        to="washapp.provider",
                    ),
                ),
                (
                    "wash_request",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="rating",
                        to="washapp.washrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="WorkflowEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("from_status", models.CharField(max_length=30)),
                ("to_status", models.CharField(max_length=30)),
                (
                    "actor_role",
                    models.CharField(
                        choices=[("client", "Client"), ("provider", "Provider"), ("system", "System")],
                        default="system",
                        max_length=20,
                    ),
                ),
                (
                    "source",
                    models.CharField(
                        choices=[("user", "User"), ("sweeper", "Expiry sweep"), ("system", "System")],
                        default="system",
                        max_length=20,
                    ),
                ),
                ("note", models.CharField(blank=True, max_length=240)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor_user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="workflow_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "wash_request",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="workflow_events",
                        to="washapp.washrequest",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["wash_request", "created_at"], name="wfevent_request_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="MobileDevice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "platform",
                    models.CharField(choices=[("ios", "iOS"), ("android", "Android"), ("web", "Web")], max_length=20),
                ),
                ("device_id", models.CharField(max_length=120)),
                ("push_token", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("app_version", models.CharField(blank=True, max_length=40)),
                ("locale", models.CharField(blank=True, max_length=20)),
                ("timezone", models.CharField(blank=True, max_length=60)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_seen_at", models.DateTimeField(auto_now=True)),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="mobile_devices",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-last_seen_at", "-id"],
                "unique_together": {("user", "platform", "device_id")},
            },
        ),
        migrations.CreateModel(
            name="ErrorLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("path", models.CharField(blank=True, max_length=300)),
                ("method", models.CharField(blank=True, max_length=10)),
                ("status_code", models.PositiveSmallIntegerField(default=500)),
                ("message", models.CharField(max_length=500)),
                ("traceback", models.TextField(blank=True)),
                ("request_id", models.CharField(blank=True, db_index=True, max_length=120)),
                ("ip_address", models.CharField(blank=True, max_length=64)),
                ("user_agent", models.CharField(blank=True, max_length=255)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="error_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["status_code", "created_at"], name="errorlog_status_created_idx"),
                    models.Index(fields=["resolved_at", "created_at"], name="errorlog_resolved_created_idx"),
                ],
            },
        ),
    ]
