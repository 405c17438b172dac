from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.contrib.auth.models import User
from django.core import mail
from django.core.management import call_command
from django.db import IntegrityError, OperationalError, transaction
from django.test import RequestFactory, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from .constants import PROVIDER_FEED_GROUP
from .consumers import _resolve_feed_groups
from .exceptions import AlreadyClaimed, InvalidTransition, NotFound, StorageUnavailable, ValidationError
from .expiry import find_overdue, is_overdue, sweep_expired_requests
from .lifecycle import (
    accept_wash_request,
    attach_invoice,
    cancel_by_client,
    cancel_by_provider,
    complete_wash_request,
    create_wash_request,
    decline_wash_request,
    delete_wash_request,
    rate_provider,
    start_wash_request,
    update_wash_request_details,
)
from .listings import (
    get_client_request,
    get_provider_request,
    list_client_invoices,
    list_client_requests,
    list_provider_jobs,
    list_visible_requests,
)
from .middleware import ErrorLoggingMiddleware
from .models import (
    ClientCompany,
    ErrorLog,
    MobileDevice,
    Provider,
    ProviderDecline,
    SchedulerHeartbeat,
    SchedulerLock,
    Vehicle,
    WashRequest,
    WashRequestVehicle,
    WorkflowEvent,
)
from .store import DeclineLedger, WashRequestStore, wash_request_store
from .visibility import matching_providers, services_match, visible_requests_for_provider

PASSWORD = "StrongPass123!"


def tomorrow_at(hour=10):
    local_now = timezone.localtime(timezone.now())
    return (local_now + timedelta(days=1)).replace(hour=hour, minute=0, second=0, microsecond=0)


class FleetWashFixtureMixin:
    def setUp(self):
        self.client_user = User.objects.create_user(username="fleetco", password=PASSWORD, email="ops@fleetco.test")
        self.company = ClientCompany.objects.create(
            user=self.client_user,
            name="FleetCo Logistics",
            address="Lagerstrasse 4, Hamburg",
            contact="Jana Weber",
            phone="040123456",
            email="dispatch@fleetco.test",
        )
        self.van = Vehicle.objects.create(client_company=self.company, license_plate="HH-FC 101", brand="VW", model="Crafter")
        self.truck = Vehicle.objects.create(client_company=self.company, license_plate="HH-FC 202", brand="MAN", model="TGL")

        self.other_user = User.objects.create_user(username="othercorp", password=PASSWORD)
        self.other_company = ClientCompany.objects.create(user=self.other_user, name="Other Corp")
        self.foreign_vehicle = Vehicle.objects.create(
            client_company=self.other_company,
            license_plate="B-OC 1",
            brand="Ford",
            model="Transit",
        )

        self.provider_user_a = User.objects.create_user(username="sparkle", password=PASSWORD, email="a@sparkle.test")
        self.provider_a = Provider.objects.create(
            user=self.provider_user_a,
            name="Sparkle Mobile Wash",
            base_city="Hamburg",
            services=["exterior", "interior", "complete"],
            phone="0401111",
        )
        self.provider_user_b = User.objects.create_user(username="shiny", password=PASSWORD, email="b@shiny.test")
        self.provider_b = Provider.objects.create(
            user=self.provider_user_b,
            name="Shiny Fleet Care",
            base_city="Hamburg",
            services=["exterior", "interior"],
        )
        self.provider_user_ext = User.objects.create_user(username="outside", password=PASSWORD, email="c@outside.test")
        self.provider_exterior_only = Provider.objects.create(
            user=self.provider_user_ext,
            name="Outside Only",
            base_city="Berlin",
            services=["exterior"],
        )

    def _create(self, *, vehicles=None, when=None, notes=""):
        return create_wash_request(
            self.company,
            address="Lagerstrasse 4, Hamburg",
            date_time=when or tomorrow_at(10),
            notes=notes,
            vehicle_assignments=vehicles or [{"vehicle": self.van, "service_type": "exterior"}],
            actor_user=self.client_user,
        )

    def _insert(self, *, when, status="pending", provider=None, services=("exterior",)):
        wash_request = WashRequest.objects.create(
            client_company=self.company,
            provider=provider,
            address="Lagerstrasse 4, Hamburg",
            date_time=when,
            status=status,
        )
        for position, (vehicle, service_type) in enumerate(zip([self.van, self.truck], services)):
            WashRequestVehicle.objects.create(
                wash_request=wash_request,
                vehicle=vehicle,
                service_type=service_type,
                position=position,
            )
        return wash_request


class RacingLedger(DeclineLedger):
    """Runs a competing action right after the decline check."""

    def __init__(self, competing_action):
        self.competing_action = competing_action

    def has_declined(self, provider, wash_request):
        action, self.competing_action = self.competing_action, None
        if action:
            action()
        return super().has_declined(provider, wash_request)


class WashRequestLifecycleTests(FleetWashFixtureMixin, TestCase):
    def test_create_wash_request_starts_pending_with_ordered_vehicles(self):
        wash_request = self._create(
            vehicles=[
                {"vehicle": self.truck, "service_type": "interior"},
                {"vehicle": self.van, "service_type": "exterior"},
            ],
            notes="  Gate code 1234  ",
        )

        self.assertEqual(wash_request.status, "pending")
        self.assertIsNone(wash_request.provider_id)
        self.assertEqual(wash_request.notes, "Gate code 1234")
        self.assertEqual(
            [(entry.vehicle_id, entry.service_type) for entry in wash_request.vehicles.all()],
            [(self.truck.id, "interior"), (self.van.id, "exterior")],
        )
        self.assertTrue(
            WorkflowEvent.objects.filter(wash_request=wash_request, from_status="", to_status="pending").exists()
        )

    def test_create_rejects_today_and_accepts_tomorrow(self):
        today_late = timezone.localtime(timezone.now()).replace(hour=23, minute=59, second=0, microsecond=0)
        with self.assertRaises(ValidationError) as ctx:
            self._create(when=today_late)
        self.assertEqual(ctx.exception.code, "date-too-soon")

        self.assertEqual(self._create(when=tomorrow_at(7)).status, "pending")

    def test_create_validates_vehicles_and_address(self):
        with self.assertRaises(ValidationError) as ctx:
            self._create(vehicles=[])
        self.assertEqual(ctx.exception.code, "vehicles-required")

        with self.assertRaises(ValidationError) as ctx:
            self._create(vehicles=[{"vehicle": self.foreign_vehicle, "service_type": "exterior"}])
        self.assertEqual(ctx.exception.code, "vehicle-not-owned")

        with self.assertRaises(ValidationError) as ctx:
            self._create(vehicles=[{"vehicle": self.van, "service_type": "polish"}])
        self.assertEqual(ctx.exception.code, "service-required")

        with self.assertRaises(ValidationError) as ctx:
            self._create(
                vehicles=[
                    {"vehicle": self.van, "service_type": "exterior"},
                    {"vehicle_id": self.van.id, "service_type": "interior"},
                ]
            )
        self.assertEqual(ctx.exception.code, "vehicle-duplicate")

        with self.assertRaises(ValidationError) as ctx:
            create_wash_request(
                self.company,
                address="   ",
                date_time=tomorrow_at(),
                vehicle_assignments=[{"vehicle": self.van, "service_type": "exterior"}],
            )
        self.assertEqual(ctx.exception.code, "address-required")
        self.assertEqual(WashRequest.objects.count(), 0)

    def test_accept_binds_provider_and_records_event(self):
        wash_request = self._create()

        accepted = accept_wash_request(wash_request.id, self.provider_a, actor_user=self.provider_user_a)

        self.assertEqual(accepted.status, "accepted")
        self.assertEqual(accepted.provider_id, self.provider_a.id)
        self.assertIsNotNone(accepted.accepted_at)
        self.assertEqual(accepted.version, wash_request.version + 1)
        event = WorkflowEvent.objects.filter(wash_request=wash_request, to_status="accepted").get()
        self.assertEqual(event.actor_role, "provider")
        self.assertEqual(event.actor_user, self.provider_user_a)

    def test_accept_retry_by_winner_returns_request_unchanged(self):
        wash_request = self._create()
        first = accept_wash_request(wash_request.id, self.provider_a)
        again = accept_wash_request(wash_request.id, self.provider_a)
        self.assertEqual(again.provider_id, self.provider_a.id)
        self.assertEqual(again.version, first.version)

    def test_second_provider_cannot_claim_accepted_request(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)

        with self.assertRaises(AlreadyClaimed):
            accept_wash_request(wash_request.id, self.provider_b)

        wash_request.refresh_from_db()
        self.assertEqual(wash_request.provider_id, self.provider_a.id)

    def test_concurrent_accept_loser_sees_already_claimed(self):
        wash_request = self._create()
        ledger = RacingLedger(lambda: accept_wash_request(wash_request.id, self.provider_a))

        with self.assertRaises(AlreadyClaimed):
            accept_wash_request(wash_request.id, self.provider_b, ledger=ledger)

        wash_request.refresh_from_db()
        self.assertEqual(wash_request.status, "accepted")
        self.assertEqual(wash_request.provider_id, self.provider_a.id)
        self.assertEqual(WorkflowEvent.objects.filter(wash_request=wash_request, to_status="accepted").count(), 1)

    def test_conditional_write_succeeds_only_once(self):
        wash_request = self._create()
        first = wash_request_store.update_if_status(
            wash_request.id, ["pending"], provider_id=None, status="accepted", provider=self.provider_a
        )
        second = wash_request_store.update_if_status(
            wash_request.id, ["pending"], provider_id=None, status="accepted", provider=self.provider_b
        )
        self.assertTrue(first)
        self.assertFalse(second)

    def test_decline_hides_request_and_blocks_later_accept(self):
        wash_request = self._create()

        decline_wash_request(wash_request.id, self.provider_a)
        decline_wash_request(wash_request.id, self.provider_a)

        self.assertEqual(ProviderDecline.objects.filter(provider=self.provider_a, wash_request=wash_request).count(), 1)
        self.assertEqual(ProviderDecline.objects.get(provider=self.provider_a).reason, "declined")
        visible_ids = [item.wash_request.id for item in visible_requests_for_provider(self.provider_a)]
        self.assertNotIn(wash_request.id, visible_ids)
        with self.assertRaises(ValidationError) as ctx:
            accept_wash_request(wash_request.id, self.provider_a)
        self.assertEqual(ctx.exception.code, "declined")

        wash_request.refresh_from_db()
        self.assertEqual(wash_request.status, "pending")

    def test_decline_of_claimed_request_is_invalid(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition):
            decline_wash_request(wash_request.id, self.provider_b)

    def test_provider_cancel_returns_request_to_pool_as_recycled(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)

        released = cancel_by_provider(wash_request.id, self.provider_a)

        self.assertEqual(released.status, "pending")
        self.assertIsNone(released.provider_id)
        self.assertIsNone(released.accepted_at)
        decline = ProviderDecline.objects.get(provider=self.provider_a, wash_request=wash_request)
        self.assertEqual(decline.reason, "cancelled")

        self.assertNotIn(wash_request.id, [item.wash_request.id for item in visible_requests_for_provider(self.provider_a)])
        visible_for_b = {item.wash_request.id: item for item in visible_requests_for_provider(self.provider_b)}
        self.assertIn(wash_request.id, visible_for_b)
        self.assertTrue(visible_for_b[wash_request.id].recycled)

    def test_provider_cancel_retry_is_noop(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)
        cancel_by_provider(wash_request.id, self.provider_a)

        again = cancel_by_provider(wash_request.id, self.provider_a)

        self.assertEqual(again.status, "pending")
        self.assertEqual(ProviderDecline.objects.filter(wash_request=wash_request).count(), 1)
        self.assertEqual(WorkflowEvent.objects.filter(wash_request=wash_request, to_status="pending").count(), 2)

    def test_provider_cancel_completes_on_retry_after_status_write_failure(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)

        with mock.patch("washapp.lifecycle.transition_wash_request_status", side_effect=StorageUnavailable()):
            with self.assertRaises(StorageUnavailable):
                cancel_by_provider(wash_request.id, self.provider_a)

        wash_request.refresh_from_db()
        self.assertEqual(wash_request.status, "accepted")
        self.assertTrue(ProviderDecline.objects.filter(provider=self.provider_a, wash_request=wash_request).exists())

        released = cancel_by_provider(wash_request.id, self.provider_a)
        self.assertEqual(released.status, "pending")
        self.assertIsNone(released.provider_id)
        self.assertEqual(ProviderDecline.objects.filter(wash_request=wash_request).count(), 1)

    def test_only_bound_provider_can_start_complete_or_cancel(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)

        for action in (start_wash_request, cancel_by_provider):
            with self.assertRaises(ValidationError) as ctx:
                action(wash_request.id, self.provider_b)
            self.assertEqual(ctx.exception.code, "forbidden")
            self.assertEqual(ctx.exception.status_code, 403)

        start_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(ValidationError):
            complete_wash_request(wash_request.id, self.provider_b)

    def test_full_flow_to_completion_then_invoice_and_rating(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)
        started = start_wash_request(wash_request.id, self.provider_a)
        self.assertEqual(started.status, "in_progress")
        self.assertEqual(start_wash_request(wash_request.id, self.provider_a).status, "in_progress")

        with self.assertRaises(InvalidTransition):
            attach_invoice(wash_request.id, self.provider_a, "https://invoices.test/1.pdf")

        completed = complete_wash_request(wash_request.id, self.provider_a)
        self.assertEqual(completed.status, "completed")
        self.assertEqual(completed.provider_id, self.provider_a.id)
        self.assertIsNotNone(completed.completed_at)

        with self.assertRaises(ValidationError) as ctx:
            attach_invoice(wash_request.id, self.provider_a, "not a url")
        self.assertEqual(ctx.exception.code, "invoice-url-invalid")
        invoiced = attach_invoice(wash_request.id, self.provider_a, "https://invoices.test/1.pdf")
        self.assertEqual(invoiced.invoice_url, "https://invoices.test/1.pdf")
        self.assertEqual([item.id for item in list_client_invoices(self.company)], [wash_request.id])

        rate_provider(wash_request.id, self.company, 4, "Quick and clean")
        self.provider_a.refresh_from_db()
        self.assertEqual(self.provider_a.rating, Decimal("4.0"))
        self.assertEqual(self.provider_a.rating_count, 1)
        with self.assertRaises(ValidationError) as ctx:
            rate_provider(wash_request.id, self.company, 5)
        self.assertEqual(ctx.exception.code, "already-rated")

    def test_rating_requires_completed_request_and_valid_score(self):
        wash_request = self._create()
        with self.assertRaises(InvalidTransition):
            rate_provider(wash_request.id, self.company, 5)

        accept_wash_request(wash_request.id, self.provider_a)
        start_wash_request(wash_request.id, self.provider_a)
        complete_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(ValidationError) as ctx:
            rate_provider(wash_request.id, self.company, 6)
        self.assertEqual(ctx.exception.code, "score-invalid")

    def test_client_cancel_clears_provider_and_is_final(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)

        cancelled = cancel_by_client(wash_request.id, self.company, actor_user=self.client_user)

        self.assertEqual(cancelled.status, "cancelled")
        self.assertIsNone(cancelled.provider_id)
        self.assertEqual(cancelled.cancelled_by, "client")
        with self.assertRaises(InvalidTransition):
            cancel_by_client(wash_request.id, self.company)
        with self.assertRaises(InvalidTransition):
            accept_wash_request(wash_request.id, self.provider_b)

    def test_client_cannot_touch_another_company_request(self):
        wash_request = self._create()
        with self.assertRaises(ValidationError) as ctx:
            cancel_by_client(wash_request.id, self.other_company)
        self.assertEqual(ctx.exception.code, "forbidden")
        with self.assertRaises(NotFound):
            get_client_request(self.other_company, wash_request.id)

    def test_completed_request_rejects_every_transition(self):
        wash_request = self._insert(when=tomorrow_at(), status="completed", provider=self.provider_a)

        with self.assertRaises(InvalidTransition):
            accept_wash_request(wash_request.id, self.provider_b)
        with self.assertRaises(InvalidTransition):
            cancel_by_client(wash_request.id, self.company)
        with self.assertRaises(InvalidTransition):
            cancel_by_provider(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition):
            delete_wash_request(wash_request.id, self.company)
        self.assertEqual(complete_wash_request(wash_request.id, self.provider_a).status, "completed")

    def test_cancelled_request_rejects_every_transition(self):
        wash_request = self._create()
        cancel_by_client(wash_request.id, self.company)

        with self.assertRaises(InvalidTransition):
            accept_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition):
            decline_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition):
            start_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition):
            complete_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition):
            cancel_by_provider(wash_request.id, self.provider_a)

        wash_request.refresh_from_db()
        self.assertEqual(wash_request.status, "cancelled")
        self.assertIsNone(wash_request.provider_id)
        self.assertFalse(ProviderDecline.objects.filter(wash_request=wash_request).exists())

    def test_request_recycles_through_several_providers(self):
        wash_request = self._create()

        accept_wash_request(wash_request.id, self.provider_a)
        cancel_by_provider(wash_request.id, self.provider_a)
        accept_wash_request(wash_request.id, self.provider_b)
        released = cancel_by_provider(wash_request.id, self.provider_b)

        self.assertEqual(released.status, "pending")
        self.assertIsNone(released.provider_id)
        self.assertEqual(
            set(ProviderDecline.objects.filter(wash_request=wash_request).values_list("provider_id", flat=True)),
            {self.provider_a.id, self.provider_b.id},
        )
        for provider in (self.provider_a, self.provider_b):
            self.assertNotIn(wash_request.id, [item.wash_request.id for item in visible_requests_for_provider(provider)])
            with self.assertRaises(ValidationError):
                accept_wash_request(wash_request.id, provider)
        visible_for_c = {item.wash_request.id: item for item in visible_requests_for_provider(self.provider_exterior_only)}
        self.assertTrue(visible_for_c[wash_request.id].recycled)
        self.assertEqual(accept_wash_request(wash_request.id, self.provider_exterior_only).status, "accepted")

    def test_update_details_only_while_pending(self):
        wash_request = self._create()
        updated = update_wash_request_details(wash_request.id, self.company, notes="Use the side entrance")
        self.assertEqual(updated.notes, "Use the side entrance")
        self.assertEqual(updated.address, wash_request.address)

        with self.assertRaises(ValidationError):
            update_wash_request_details(wash_request.id, self.company, date_time=timezone.now())

        accept_wash_request(wash_request.id, self.provider_a)
        with self.assertRaises(InvalidTransition) as ctx:
            update_wash_request_details(wash_request.id, self.company, address="Elsewhere 1")
        self.assertEqual(ctx.exception.code, "not-editable")

    def test_delete_removes_non_terminal_request(self):
        wash_request = self._create()
        delete_wash_request(wash_request.id, self.company)
        self.assertFalse(WashRequest.objects.filter(id=wash_request.id).exists())
        with self.assertRaises(NotFound):
            delete_wash_request(wash_request.id, self.company)

    def test_provider_binding_is_enforced_by_database(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            WashRequest.objects.create(
                client_company=self.company,
                address="Somewhere 1",
                date_time=tomorrow_at(),
                status="accepted",
            )
        with self.assertRaises(IntegrityError), transaction.atomic():
            WashRequest.objects.create(
                client_company=self.company,
                provider=self.provider_a,
                address="Somewhere 1",
                date_time=tomorrow_at(),
                status="pending",
            )
        with self.assertRaises(IntegrityError), transaction.atomic():
            WashRequest.objects.create(
                client_company=self.company,
                address="Somewhere 1",
                date_time=tomorrow_at(),
                invoice_url="https://invoices.test/early.pdf",
            )

    def test_storage_failure_is_reported_as_unavailable(self):
        wash_request = self._create()
        with mock.patch.object(WashRequest.objects, "filter", side_effect=OperationalError("database is locked")):
            with self.assertRaises(StorageUnavailable):
                wash_request_store.update_if_status(wash_request.id, ["pending"], status="cancelled")


class ExpirySweepTests(FleetWashFixtureMixin, TestCase):
    def test_overdue_predicates(self):
        now = timezone.now()
        past_pending = self._insert(when=now - timedelta(hours=1))
        future_pending = self._insert(when=now + timedelta(days=2))
        past_completed = self._insert(when=now - timedelta(hours=1), status="completed", provider=self.provider_a)

        self.assertTrue(is_overdue(past_pending, now))
        self.assertFalse(is_overdue(future_pending, now))
        self.assertFalse(is_overdue(past_completed, now))
        self.assertEqual(find_overdue([past_pending, future_pending, past_completed], now), [past_pending])

    def test_sweep_cancels_overdue_pending_and_accepted(self):
        now = timezone.now()
        pending = self._insert(when=now - timedelta(hours=2))
        accepted = self._insert(when=now - timedelta(minutes=5), status="accepted", provider=self.provider_a)
        in_progress = self._insert(when=now - timedelta(hours=1), status="in_progress", provider=self.provider_b)
        upcoming = self._insert(when=now + timedelta(days=1))

        cancelled_ids = sweep_expired_requests(now=now)

        self.assertEqual(sorted(cancelled_ids), sorted([pending.id, accepted.id]))
        for item in (pending, accepted):
            item.refresh_from_db()
            self.assertEqual(item.status, "cancelled")
            self.assertIsNone(item.provider_id)
            self.assertEqual(item.cancelled_by, "system")
        in_progress.refresh_from_db()
        upcoming.refresh_from_db()
        self.assertEqual(in_progress.status, "in_progress")
        self.assertEqual(upcoming.status, "pending")
        self.assertEqual(WorkflowEvent.objects.filter(source="sweeper").count(), 2)

    def test_sweep_is_idempotent(self):
        now = timezone.now()
        self._insert(when=now - timedelta(hours=2))
        self.assertEqual(len(sweep_expired_requests(now=now)), 1)
        self.assertEqual(sweep_expired_requests(now=now), [])
        self.assertEqual(WorkflowEvent.objects.filter(source="sweeper").count(), 1)

    def test_sweep_scope_is_limited_to_client_company(self):
        now = timezone.now()
        mine = self._insert(when=now - timedelta(hours=2))
        theirs = WashRequest.objects.create(
            client_company=self.other_company,
            address="Elsewhere 2",
            date_time=now - timedelta(hours=2),
        )

        sweep_expired_requests(now=now, client_company=self.company)

        mine.refresh_from_db()
        theirs.refresh_from_db()
        self.assertEqual(mine.status, "cancelled")
        self.assertEqual(theirs.status, "pending")

    def test_missed_sweep_is_applied_on_next_list_and_blocks_accept(self):
        overdue = self._insert(when=timezone.now() - timedelta(days=1))

        listed = list_client_requests(self.company)

        self.assertEqual([item.status for item in listed if item.id == overdue.id], ["cancelled"])
        with self.assertRaises(InvalidTransition):
            accept_wash_request(overdue.id, self.provider_a)

    def test_accept_on_unswept_overdue_request_expires_it_first(self):
        overdue = self._insert(when=timezone.now() - timedelta(minutes=1))
        with self.assertRaises(InvalidTransition):
            accept_wash_request(overdue.id, self.provider_a)
        overdue.refresh_from_db()
        self.assertEqual(overdue.status, "cancelled")

    def test_provider_lists_sweep_before_reading(self):
        overdue_job = self._insert(when=timezone.now() - timedelta(hours=1), status="accepted", provider=self.provider_a)
        overdue_pending = self._insert(when=timezone.now() - timedelta(hours=1))

        self.assertEqual(list_provider_jobs(self.provider_a), [])
        self.assertNotIn(overdue_pending.id, [item.wash_request.id for item in list_visible_requests(self.provider_b)])
        overdue_job.refresh_from_db()
        self.assertEqual(overdue_job.status, "cancelled")

    def test_sweep_failure_does_not_block_read(self):
        overdue = self._insert(when=timezone.now() - timedelta(hours=1))

        with mock.patch("washapp.expiry.sweep_expired_requests", side_effect=StorageUnavailable()):
            with self.assertLogs("washapp.expiry", level="WARNING"):
                listed = list_client_requests(self.company)

        self.assertEqual([item.id for item in listed], [overdue.id])
        self.assertEqual(listed[0].status, "pending")

    def test_detail_reads_survive_expiry_write_failure(self):
        overdue = self._insert(when=timezone.now() - timedelta(hours=1))

        with mock.patch.object(WashRequestStore, "update_if_status", side_effect=StorageUnavailable()):
            with self.assertLogs("washapp.expiry", level="WARNING"):
                client_view = get_client_request(self.company, overdue.id)
                provider_view = get_provider_request(self.provider_a, overdue.id)

        self.assertEqual(client_view.status, "pending")
        self.assertEqual(provider_view.status, "pending")
        self.assertFalse(WorkflowEvent.objects.filter(wash_request=overdue, source="sweeper").exists())

    def test_detail_read_expiry_publishes_feed_event(self):
        overdue = self._insert(when=timezone.now() - timedelta(hours=1))

        with mock.patch("washapp.expiry.notify_requests_expired") as notify_expired:
            wash_request = get_client_request(self.company, overdue.id)

        self.assertEqual(wash_request.status, "cancelled")
        notify_expired.assert_called_once_with([overdue.id])

    def test_accept_expiry_publishes_feed_event(self):
        overdue = self._insert(when=timezone.now() - timedelta(minutes=5))

        with mock.patch("washapp.expiry.notify_requests_expired") as notify_expired:
            with self.assertRaises(InvalidTransition):
                accept_wash_request(overdue.id, self.provider_a)

        notify_expired.assert_called_once_with([overdue.id])

    def test_wash_lifecycle_command_sweeps_and_records_heartbeat(self):
        overdue = self._insert(when=timezone.now() - timedelta(hours=3))
        output = StringIO()

        call_command("wash_lifecycle", stdout=output)

        overdue.refresh_from_db()
        self.assertEqual(overdue.status, "cancelled")
        self.assertIn("Sweep #1 completed, 1 request(s) expired.", output.getvalue())
        heartbeat = SchedulerHeartbeat.objects.get(worker_name="wash_lifecycle")
        self.assertEqual(heartbeat.run_count, 1)
        self.assertIsNotNone(heartbeat.last_success_at)
        lock = SchedulerLock.objects.get(worker_name="wash_lifecycle")
        self.assertEqual(lock.lock_owner, "")

    def test_wash_lifecycle_command_skips_when_lock_held_by_other_worker(self):
        overdue = self._insert(when=timezone.now() - timedelta(hours=3))
        SchedulerLock.objects.create(
            worker_name="wash_lifecycle",
            lock_owner="other-worker",
            locked_until=timezone.now() + timedelta(minutes=5),
        )
        output = StringIO()

        call_command("wash_lifecycle", stdout=output)

        self.assertIn("another worker currently holds the lock", output.getvalue())
        overdue.refresh_from_db()
        self.assertEqual(overdue.status, "pending")
        self.assertEqual(SchedulerLock.objects.get(worker_name="wash_lifecycle").lock_owner, "other-worker")

    def test_wash_lifecycle_command_takes_over_expired_lock(self):
        SchedulerLock.objects.create(
            worker_name="wash_lifecycle",
            lock_owner="dead-worker",
            locked_until=timezone.now() - timedelta(minutes=1),
        )
        output = StringIO()

        call_command("wash_lifecycle", "--loop", "--max-runs", "1", "--interval", "1", stdout=output)

        self.assertIn("Sweep #1 completed", output.getvalue())


class WashRequestStoreTests(FleetWashFixtureMixin, TestCase):
    def test_update_writes_fields_and_reloads(self):
        wash_request = self._create()

        updated = wash_request_store.update(wash_request.id, notes="Keys at reception")

        self.assertEqual(updated.notes, "Keys at reception")
        self.assertEqual([entry.vehicle_id for entry in updated.vehicles.all()], [self.van.id])
        wash_request.refresh_from_db()
        self.assertEqual(wash_request.notes, "Keys at reception")

    def test_update_of_missing_request_raises_not_found(self):
        with self.assertRaises(NotFound):
            wash_request_store.update(999999, notes="nothing here")

    def test_delete_removes_request_and_vehicle_rows(self):
        wash_request = self._create()

        wash_request_store.delete(wash_request.id)

        self.assertIsNone(wash_request_store.get_by_id(wash_request.id))
        self.assertFalse(WashRequestVehicle.objects.filter(wash_request_id=wash_request.id).exists())
        with self.assertRaises(NotFound):
            wash_request_store.delete(wash_request.id)

    def test_delete_if_status_only_matches_expected_status(self):
        wash_request = self._create()
        self.assertFalse(wash_request_store.delete_if_status(wash_request.id, ["accepted"]))
        self.assertTrue(wash_request_store.delete_if_status(wash_request.id, ["pending"]))
        self.assertFalse(WashRequest.objects.filter(id=wash_request.id).exists())


class VisibilityTests(FleetWashFixtureMixin, TestCase):
    def test_services_match_policies(self):
        self.assertTrue(services_match({"exterior"}, {"exterior", "interior"}, "strict"))
        self.assertFalse(services_match({"exterior", "interior"}, {"exterior"}, "strict"))
        self.assertTrue(services_match({"exterior", "interior"}, {"exterior"}, "lenient"))
        self.assertFalse(services_match(set(), {"exterior"}, "lenient"))

    def test_strict_policy_is_default_for_partial_service_match(self):
        mixed = self._create(
            vehicles=[
                {"vehicle": self.van, "service_type": "interior"},
                {"vehicle": self.truck, "service_type": "exterior"},
            ]
        )
        visible_ids = [item.wash_request.id for item in visible_requests_for_provider(self.provider_exterior_only)]
        self.assertNotIn(mixed.id, visible_ids)
        self.assertIn(mixed.id, [item.wash_request.id for item in visible_requests_for_provider(self.provider_b)])

    @override_settings(VISIBILITY_SERVICE_MATCH_POLICY="lenient")
    def test_lenient_policy_shows_partial_service_match(self):
        mixed = self._create(
            vehicles=[
                {"vehicle": self.van, "service_type": "interior"},
                {"vehicle": self.truck, "service_type": "exterior"},
            ]
        )
        visible_ids = [item.wash_request.id for item in visible_requests_for_provider(self.provider_exterior_only)]
        self.assertIn(mixed.id, visible_ids)

    @override_settings(VISIBILITY_SERVICE_MATCH_POLICY="bogus")
    def test_unknown_policy_falls_back_to_strict(self):
        mixed = self._create(
            vehicles=[
                {"vehicle": self.van, "service_type": "interior"},
                {"vehicle": self.truck, "service_type": "exterior"},
            ]
        )
        visible_ids = [item.wash_request.id for item in visible_requests_for_provider(self.provider_exterior_only)]
        self.assertNotIn(mixed.id, visible_ids)

    def test_list_is_sorted_by_soonest_and_excludes_claimed(self):
        later = self._create(when=tomorrow_at(15))
        sooner = self._create(when=tomorrow_at(8))
        claimed = self._create(when=tomorrow_at(9))
        accept_wash_request(claimed.id, self.provider_b)

        visible = visible_requests_for_provider(self.provider_a)

        self.assertEqual([item.wash_request.id for item in visible], [sooner.id, later.id])
        self.assertFalse(any(item.recycled for item in visible))

    def test_geography_is_ignored_unless_city_filter_enabled(self):
        wash_request = self._create()
        self.assertIn(
            wash_request.id,
            [item.wash_request.id for item in visible_requests_for_provider(self.provider_exterior_only)],
        )
        with override_settings(VISIBILITY_CITY_FILTER_ENABLED=True):
            self.assertNotIn(
                wash_request.id,
                [item.wash_request.id for item in visible_requests_for_provider(self.provider_exterior_only)],
            )
            self.assertIn(
                wash_request.id,
                [item.wash_request.id for item in visible_requests_for_provider(self.provider_a)],
            )

    def test_matching_providers_skips_decliners(self):
        wash_request = self._create(vehicles=[{"vehicle": self.van, "service_type": "complete"}])
        self.assertEqual(matching_providers(wash_request), [self.provider_a])
        decline_wash_request(wash_request.id, self.provider_a)
        self.assertEqual(matching_providers(wash_request), [])

    def test_provider_detail_access(self):
        wash_request = self._create(vehicles=[{"vehicle": self.van, "service_type": "complete"}])
        self.assertEqual(get_provider_request(self.provider_a, wash_request.id).id, wash_request.id)
        with self.assertRaises(ValidationError):
            get_provider_request(self.provider_b, wash_request.id)

        accept_wash_request(wash_request.id, self.provider_a)
        self.assertEqual(get_provider_request(self.provider_a, wash_request.id).status, "accepted")


class NotificationTests(FleetWashFixtureMixin, TestCase):
    def test_new_request_emails_matching_providers(self):
        with self.captureOnCommitCallbacks(execute=True):
            self._create(vehicles=[{"vehicle": self.van, "service_type": "interior"}])

        recipients = sorted(message.to[0] for message in mail.outbox)
        self.assertEqual(recipients, ["a@sparkle.test", "b@shiny.test"])
        self.assertEqual(mail.outbox[0].subject, "New wash request available")

    def test_accept_emails_client_with_provider_contact(self):
        wash_request = self._create()
        mail.outbox.clear()

        with self.captureOnCommitCallbacks(execute=True):
            accept_wash_request(wash_request.id, self.provider_a)

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["dispatch@fleetco.test"])
        self.assertIn("Sparkle Mobile Wash", mail.outbox[0].body)
        self.assertIn("0401111", mail.outbox[0].body)

    def test_provider_cancel_and_client_delete_notify_the_other_side(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)
        with self.captureOnCommitCallbacks(execute=True):
            cancel_by_provider(wash_request.id, self.provider_a)
        self.assertEqual(mail.outbox[-1].to, ["dispatch@fleetco.test"])

        accept_wash_request(wash_request.id, self.provider_b)
        mail.outbox.clear()
        with self.captureOnCommitCallbacks(execute=True):
            delete_wash_request(wash_request.id, self.company)
        self.assertEqual([message.to for message in mail.outbox], [["b@shiny.test"]])

    def test_client_cancel_notifies_former_provider(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)
        mail.outbox.clear()

        with self.captureOnCommitCallbacks(execute=True):
            cancel_by_client(wash_request.id, self.company)

        self.assertEqual([message.to for message in mail.outbox], [["a@sparkle.test"]])

    def test_notification_failure_does_not_fail_transition(self):
        wash_request = self._create()

        with mock.patch("washapp.notifications.send_email", side_effect=RuntimeError("smtp down")):
            with self.assertLogs("washapp.notifications", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    accepted = accept_wash_request(wash_request.id, self.provider_a)

        self.assertEqual(accepted.status, "accepted")

    @override_settings(PUSH_WEBHOOK_URL="", PUSH_DEBUG_FALLBACK=True)
    def test_push_goes_to_registered_devices(self):
        MobileDevice.objects.create(
            user=self.client_user,
            platform="ios",
            device_id="iphone-fleetco",
            push_token="ExponentPushToken[abcdefghijklmnopqrstuvwxyz012345]",
        )
        wash_request = self._create()

        with mock.patch("washapp.notifications.send_push") as send_push:
            with self.captureOnCommitCallbacks(execute=True):
                accept_wash_request(wash_request.id, self.provider_a)

        send_push.assert_called_once()
        tokens, title = send_push.call_args.args[:2]
        self.assertEqual(tokens, ["ExponentPushToken[abcdefghijklmnopqrstuvwxyz012345]"])
        self.assertEqual(title, "Your wash request was accepted")

    def test_live_feed_event_reaches_provider_group(self):
        channel_layer = get_channel_layer()
        channel_name = async_to_sync(channel_layer.new_channel)()
        async_to_sync(channel_layer.group_add)(PROVIDER_FEED_GROUP, channel_name)
        try:
            with self.captureOnCommitCallbacks(execute=True):
                wash_request = self._create()
            message = async_to_sync(channel_layer.receive)(channel_name)
        finally:
            async_to_sync(channel_layer.group_discard)(PROVIDER_FEED_GROUP, channel_name)

        self.assertEqual(message["type"], "wash_request.changed")
        self.assertEqual(message["event"], "created")
        self.assertEqual(message["request_id"], wash_request.id)


class ApiTests(FleetWashFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.api = APIClient()

    def _as(self, user):
        self.api.force_authenticate(user=user)
        return self.api

    def test_login_returns_tokens_and_role(self):
        response = APIClient().post(
            reverse("api_login"),
            {"username": "fleetco", "password": PASSWORD},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["user"]["role"], "client")
        self.assertEqual(payload["user"]["client_company"]["name"], "FleetCo Logistics")

        me = APIClient()
        me.credentials(HTTP_AUTHORIZATION=f"Bearer {payload['access']}")
        response = me.get(reverse("api_me"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["username"], "fleetco")

    def test_login_rejects_wrong_password(self):
        response = APIClient().post(reverse("api_login"), {"username": "fleetco", "password": "nope"}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_anonymous_requests_are_rejected(self):
        self.assertEqual(APIClient().get(reverse("api_client_requests")).status_code, 401)

    def test_client_creates_and_lists_requests(self):
        api = self._as(self.client_user)
        response = api.post(
            reverse("api_client_requests"),
            {
                "address": "Lagerstrasse 4, Hamburg",
                "date_time": tomorrow_at(11).isoformat(),
                "notes": "Two vans",
                "vehicles": [
                    {"vehicle_id": self.van.id, "service_type": "exterior"},
                    {"vehicle_id": self.truck.id, "service_type": "interior"},
                ],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        created = response.json()
        self.assertEqual(created["status"], "pending")
        self.assertEqual([item["license_plate"] for item in created["vehicles"]], ["HH-FC 101", "HH-FC 202"])

        response = api.get(reverse("api_client_requests"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(response.json()["results"][0]["id"], created["id"])

    def test_create_with_foreign_vehicle_is_rejected(self):
        response = self._as(self.client_user).post(
            reverse("api_client_requests"),
            {
                "address": "Lagerstrasse 4, Hamburg",
                "date_time": tomorrow_at().isoformat(),
                "vehicles": [{"vehicle_id": self.foreign_vehicle.id, "service_type": "exterior"}],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "vehicle-not-owned")

    def test_client_registers_vehicle(self):
        response = self._as(self.client_user).post(
            reverse("api_client_vehicles"),
            {"license_plate": "hh-fc 303", "brand": "Mercedes", "model": "Sprinter"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["license_plate"], "HH-FC 303")
        self.assertTrue(Vehicle.objects.filter(client_company=self.company, license_plate="HH-FC 303").exists())

    def test_provider_accept_race_answers_conflict(self):
        wash_request = self._create()

        response = self._as(self.provider_user_a).post(
            reverse("api_provider_request_action", args=[wash_request.id, "accept"])
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["provider_id"], self.provider_a.id)

        response = self._as(self.provider_user_b).post(
            reverse("api_provider_request_action", args=[wash_request.id, "accept"])
        )
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "already-claimed")

    def test_provider_list_marks_recycled_requests(self):
        wash_request = self._create()
        accept_wash_request(wash_request.id, self.provider_a)
        cancel_by_provider(wash_request.id, self.provider_a)

        response = self._as(self.provider_user_b).get(reverse("api_provider_requests"))
        self.assertEqual(response.status_code, 200)
        rows = response.json()["results"]
        self.assertEqual([(row["id"], row["recycled"]) for row in rows], [(wash_request.id, True)])

        response = self._as(self.provider_user_a).get(reverse("api_provider_requests"))
        self.assertEqual(response.json()["results"], [])

    def test_provider_job_flow_through_api(self):
        wash_request = self._create()
        api = self._as(self.provider_user_a)
        for action, expected in (("accept", "accepted"), ("start", "in_progress"), ("complete", "completed")):
            response = api.post(reverse("api_provider_request_action", args=[wash_request.id, action]))
            self.assertEqual(response.status_code, 200, action)
            self.assertEqual(response.json()["status"], expected)

        response = api.post(
            reverse("api_provider_request_invoice", args=[wash_request.id]),
            {"invoice_url": "https://invoices.test/42.pdf"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(api.get(reverse("api_provider_invoices")).json()["count"], 1)
        self.assertEqual(api.get(reverse("api_provider_jobs")).json()["results"][0]["status"], "completed")

        response = self._as(self.client_user).post(
            reverse("api_client_request_rating", args=[wash_request.id]),
            {"score": 5, "comment": "Spotless"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)

    def test_wrong_role_and_wrong_provider_are_forbidden(self):
        wash_request = self._create()
        response = self._as(self.client_user).post(
            reverse("api_provider_request_action", args=[wash_request.id, "accept"])
        )
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["detail"], "forbidden")

        accept_wash_request(wash_request.id, self.provider_a)
        response = self._as(self.provider_user_b).post(
            reverse("api_provider_request_action", args=[wash_request.id, "start"])
        )
        self.assertEqual(response.status_code, 403)

    def test_unknown_action_and_missing_request(self):
        wash_request = self._create()
        api = self._as(self.provider_user_a)
        response = api.post(reverse("api_provider_request_action", args=[wash_request.id, "teleport"]))
        self.assertEqual(response.status_code, 404)
        response = api.post(reverse("api_provider_request_action", args=[999999, "accept"]))
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "not-found")

    def test_client_cancel_twice_is_conflict(self):
        wash_request = self._create()
        api = self._as(self.client_user)
        response = api.post(reverse("api_client_request_cancel", args=[wash_request.id]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")

        response = api.post(reverse("api_client_request_cancel", args=[wash_request.id]))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["detail"], "invalid-transition")

    def test_client_edit_and_delete(self):
        wash_request = self._create()
        api = self._as(self.client_user)
        response = api.patch(
            reverse("api_client_request_detail", args=[wash_request.id]),
            {"notes": "Ring twice"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "Ring twice")

        response = api.delete(reverse("api_client_request_detail", args=[wash_request.id]))
        self.assertEqual(response.status_code, 204)
        self.assertEqual(api.get(reverse("api_client_request_detail", args=[wash_request.id])).status_code, 404)

    def test_storage_outage_answers_service_unavailable(self):
        with mock.patch("washapp.api_views.listings.list_client_requests", side_effect=StorageUnavailable()):
            response = self._as(self.client_user).get(reverse("api_client_requests"))
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["detail"], "storage-unavailable")

    def test_device_registration_moves_push_token(self):
        token = "ExponentPushToken[abcdefghijklmnopqrstuvwxyz012345]"
        payload = {"platform": "android", "device_id": "pixel-fleet-1", "push_token": token}
        response = self._as(self.client_user).post(reverse("api_device_register"), payload, format="json")
        self.assertEqual(response.status_code, 201)
        response = self._as(self.client_user).post(reverse("api_device_register"), payload, format="json")
        self.assertEqual(response.status_code, 200)

        payload["device_id"] = "pixel-fleet-2"
        self._as(self.provider_user_a).post(reverse("api_device_register"), payload, format="json")
        self.assertEqual(MobileDevice.objects.get(push_token=token).user, self.provider_user_a)

    @override_settings(LIFECYCLE_HEARTBEAT_STALE_SECONDS=10)
    def test_lifecycle_health_endpoint(self):
        response = APIClient().get(reverse("api_lifecycle_health"))
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["status"], "missing")

        call_command("wash_lifecycle", stdout=StringIO())
        response = APIClient().get(reverse("api_lifecycle_health"))
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["ok"])

        stale_at = timezone.now() - timedelta(minutes=5)
        SchedulerHeartbeat.objects.update(last_success_at=stale_at, last_started_at=stale_at)
        response = APIClient().get(reverse("api_lifecycle_health"))
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["status"], "stale")

    @override_settings(LIFECYCLE_HEALTH_TOKEN="s3cret")
    def test_lifecycle_health_endpoint_requires_token_when_configured(self):
        self.assertEqual(APIClient().get(reverse("api_lifecycle_health")).status_code, 403)
        response = APIClient().get(reverse("api_lifecycle_health"), HTTP_X_HEALTH_TOKEN="s3cret")
        self.assertEqual(response.status_code, 503)


class ErrorLoggingMiddlewareTests(TestCase):
    def test_unexpected_exception_is_persisted(self):
        request = RequestFactory().get("/api/client/requests/", HTTP_X_REQUEST_ID="req-1")
        middleware = ErrorLoggingMiddleware(lambda req: None)

        middleware.process_exception(request, RuntimeError("boom"))

        entry = ErrorLog.objects.get()
        self.assertEqual(entry.status_code, 500)
        self.assertEqual(entry.message, "boom")
        self.assertEqual(entry.request_id, "req-1")
        self.assertIn("RuntimeError", entry.traceback)

    def test_admin_filters_errors_by_api_area(self):
        ErrorLog.objects.create(path="/api/provider/requests/7/accept/", method="POST", message="provider boom")
        ErrorLog.objects.create(path="/api/client/requests/", method="GET", message="client boom")
        admin_user = User.objects.create_superuser(username="opsadmin", password=PASSWORD, email="ops@fleetwash.test")
        self.client.force_login(admin_user)

        response = self.client.get(reverse("admin:washapp_errorlog_changelist"), {"area": "provider"})

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "/api/provider/requests/7/accept/")
        self.assertNotContains(response, "/api/client/requests/")

    def test_lifecycle_errors_are_not_persisted(self):
        request = RequestFactory().get("/api/client/requests/")
        ErrorLoggingMiddleware(lambda req: None).process_exception(request, NotFound())
        self.assertFalse(ErrorLog.objects.exists())


class FeedGroupTests(FleetWashFixtureMixin, TestCase):
    def test_feed_groups_follow_account_role(self):
        self.assertEqual(
            _resolve_feed_groups(user_id=self.provider_user_a.id)["groups"],
            [PROVIDER_FEED_GROUP, f"provider_{self.provider_a.id}"],
        )
        self.assertEqual(
            _resolve_feed_groups(user_id=self.client_user.id)["groups"],
            [f"client_company_{self.company.id}"],
        )
        staff = User.objects.create_user(username="staff", password=PASSWORD)
        self.assertEqual(_resolve_feed_groups(user_id=staff.id), {"ok": False, "reason": "forbidden"})
        self.assertEqual(_resolve_feed_groups(user_id=None), {"ok": False, "reason": "unauthorized"})
