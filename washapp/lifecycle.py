"""Wash request lifecycle: creation, provider and client transitions.

Status machine::

    pending --accept--> accepted --start--> in_progress --complete--> completed
    pending <--provider cancel-- accepted
    pending / accepted --client cancel or expiry--> cancelled

``completed`` and ``cancelled`` are terminal. A provider is bound exactly
while the request is accepted, in progress or completed.

Every status write is conditional on the status that was read, so a second
actor racing on the same row loses cleanly instead of overwriting. Writes
that touch both the request row and the decline ledger record the decline
first; retrying the whole operation after a partial failure is safe.
"""
import logging
from datetime import datetime, timedelta

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.validators import URLValidator
from django.db import IntegrityError, transaction
from django.utils import timezone

from . import notifications
from .constants import (
    ACTOR_CLIENT,
    ACTOR_PROVIDER,
    DECLINE_REASON_CANCELLED,
    DECLINE_REASON_DECLINED,
    SERVICE_TYPES,
    SOURCE_USER,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    TERMINAL_STATUSES,
)
from .exceptions import AlreadyClaimed, InvalidTransition, NotFound, ValidationError, forbidden
from .expiry import expire_if_overdue
from .models import ProviderRating, Vehicle, WashRequest
from .store import UNSET, decline_ledger, storage_guard, wash_request_store
from .workflow import create_workflow_event, ensure_transition_allowed, transition_wash_request_status

logger = logging.getLogger(__name__)


def get_min_lead_days():
    return max(1, int(getattr(settings, "WASH_REQUEST_MIN_LEAD_DAYS", 1)))


def get_address_max_length():
    return WashRequest._meta.get_field("address").max_length


def earliest_allowed_date(now=None):
    return timezone.localdate(now or timezone.now()) + timedelta(days=get_min_lead_days())


def normalize_schedule(value):
    if value is None:
        raise ValidationError("Choose a date and time for the wash.", code="date-required")
    if not isinstance(value, datetime):
        raise ValidationError("Date and time are not valid.", code="date-invalid")
    if timezone.is_naive(value):
        value = timezone.make_aware(value, timezone.get_current_timezone())
    return value


def validate_schedule(value, *, now=None):
    scheduled = normalize_schedule(value)
    earliest = earliest_allowed_date(now)
    if timezone.localdate(scheduled) < earliest:
        raise ValidationError(
            "Washes can be booked from tomorrow onwards; today is not available.",
            code="date-too-soon",
        )
    return scheduled


def validate_address(value):
    address = (value or "").strip()
    if not address:
        raise ValidationError("Enter the address where the vehicles are parked.", code="address-required")
    if len(address) > get_address_max_length():
        raise ValidationError("The address is too long.", code="address-too-long")
    return address


def validate_vehicle_assignments(client_company, vehicle_assignments):
    """Return ``[{"vehicle": Vehicle, "service_type": str}, ...]`` in input order."""
    assignments = list(vehicle_assignments or [])
    if not assignments:
        raise ValidationError("Select at least one vehicle.", code="vehicles-required")

    vehicle_ids = []
    for assignment in assignments:
        vehicle_id = getattr(assignment.get("vehicle"), "pk", None) or assignment.get("vehicle_id")
        if not vehicle_id:
            raise ValidationError("Every selected vehicle needs an id.", code="vehicle-invalid")
        service_type = assignment.get("service_type")
        if service_type not in SERVICE_TYPES:
            raise ValidationError("Select a service for each vehicle.", code="service-required")
        vehicle_ids.append(vehicle_id)

    if len(set(vehicle_ids)) != len(vehicle_ids):
        raise ValidationError("A vehicle can only be added once per request.", code="vehicle-duplicate")

    with storage_guard("validate_vehicle_assignments"):
        owned = Vehicle.objects.in_bulk(vehicle_ids)
    if len(owned) != len(vehicle_ids) or any(
        vehicle.client_company_id != client_company.pk for vehicle in owned.values()
    ):
        raise ValidationError("One of the selected vehicles does not belong to your company.", code="vehicle-not-owned")

    return [
        {"vehicle": owned[vehicle_id], "service_type": assignment["service_type"]}
        for vehicle_id, assignment in zip(vehicle_ids, assignments)
    ]


def ensure_client_owns(wash_request, client_company):
    if client_company is None or wash_request.client_company_id != client_company.pk:
        raise forbidden("This wash request belongs to another company.")


def ensure_bound_provider(wash_request, provider):
    if provider is None or wash_request.provider_id != provider.pk:
        raise forbidden("Only the provider handling this request can do that.")


def _reload(wash_request_id, store):
    wash_request = store.get_by_id(wash_request_id)
    if wash_request is None:
        raise NotFound()
    return wash_request


def _load_live(wash_request_id, store, *, now=None):
    """Load a request and expire it first if its time already passed."""
    wash_request = _reload(wash_request_id, store)
    if expire_if_overdue(wash_request, now=now, store=store):
        wash_request = _reload(wash_request_id, store)
    return wash_request


def create_wash_request(
    client_company,
    *,
    address,
    date_time,
    vehicle_assignments,
    notes="",
    actor_user=None,
    now=None,
    store=None,
):
    store = store or wash_request_store
    if client_company is None:
        raise forbidden("Only client companies can create wash requests.")

    clean_address = validate_address(address)
    scheduled = validate_schedule(date_time, now=now)
    assignments = validate_vehicle_assignments(client_company, vehicle_assignments)

    with transaction.atomic():
        wash_request = store.create(
            {
                "client_company": client_company,
                "address": clean_address,
                "date_time": scheduled,
                "notes": (notes or "").strip(),
                "status": STATUS_PENDING,
            },
            assignments,
        )
        create_workflow_event(
            wash_request,
            from_status="",
            to_status=STATUS_PENDING,
            actor_user=actor_user,
            actor_role=ACTOR_CLIENT,
            source=SOURCE_USER,
            note="Client created the request",
        )
        notifications.notify_request_created(wash_request)

    logger.info(
        "Wash request %s created by client company %s with %d vehicle(s)",
        wash_request.pk,
        client_company.pk,
        len(assignments),
    )
    return wash_request


def update_wash_request_details(
    wash_request_id,
    client_company,
    *,
    address=UNSET,
    date_time=UNSET,
    notes=UNSET,
    now=None,
    store=None,
):
    store = store or wash_request_store
    wash_request = _load_live(wash_request_id, store, now=now)
    ensure_client_owns(wash_request, client_company)
    if wash_request.status != STATUS_PENDING:
        raise InvalidTransition("Only requests still waiting for a provider can be edited.", code="not-editable")

    fields = {}
    if address is not UNSET:
        fields["address"] = validate_address(address)
    if date_time is not UNSET:
        fields["date_time"] = validate_schedule(date_time, now=now)
    if notes is not UNSET:
        fields["notes"] = (notes or "").strip()
    if not fields:
        return wash_request

    if not store.update_if_status(wash_request.pk, [STATUS_PENDING], provider_id=None, **fields):
        current = _reload(wash_request.pk, store)
        raise InvalidTransition(
            "The request was accepted or closed while you were editing it.",
            code="not-editable",
            current_status=current.status,
        )
    return _reload(wash_request.pk, store)


def _raise_claim_failure(current):
    if current.status in TERMINAL_STATUSES:
        raise InvalidTransition(current_status=current.status, target_status=STATUS_ACCEPTED)
    raise AlreadyClaimed()


def accept_wash_request(wash_request_id, provider, *, actor_user=None, now=None, store=None, ledger=None):
    store = store or wash_request_store
    ledger = ledger or decline_ledger
    if provider is None:
        raise forbidden("Only providers can accept wash requests.")

    wash_request = _load_live(wash_request_id, store, now=now)
    if wash_request.status == STATUS_ACCEPTED and wash_request.provider_id == provider.pk:
        return wash_request
    if wash_request.status != STATUS_PENDING or wash_request.provider_id is not None:
        _raise_claim_failure(wash_request)
    if ledger.has_declined(provider, wash_request):
        raise ValidationError("You already declined this request.", code="declined")

    reference = now or timezone.now()
    with transaction.atomic():
        claimed = transition_wash_request_status(
            wash_request,
            STATUS_ACCEPTED,
            {"provider": provider, "accepted_at": reference},
            provider_id=None,
            actor_user=actor_user,
            actor_role=ACTOR_PROVIDER,
            source=SOURCE_USER,
            note=f"Accepted by {provider.name}",
            store=store,
        )
        if claimed:
            notifications.notify_request_accepted(wash_request)

    if not claimed:
        current = _reload(wash_request.pk, store)
        if current.status == STATUS_ACCEPTED and current.provider_id == provider.pk:
            return current
        logger.info("Provider %s lost the race for wash request %s", provider.pk, wash_request.pk)
        _raise_claim_failure(current)
    return _reload(wash_request.pk, store)


def decline_wash_request(wash_request_id, provider, *, now=None, store=None, ledger=None):
    store = store or wash_request_store
    ledger = ledger or decline_ledger
    if provider is None:
        raise forbidden("Only providers can decline wash requests.")

    wash_request = _load_live(wash_request_id, store, now=now)
    if ledger.has_declined(provider, wash_request):
        return wash_request
    if wash_request.status != STATUS_PENDING:
        if wash_request.provider_id == provider.pk and wash_request.status == STATUS_ACCEPTED:
            raise InvalidTransition("Cancel the job instead of declining it.", code="use-cancel")
        raise InvalidTransition(current_status=wash_request.status, target_status=STATUS_PENDING)

    ledger.record(provider, wash_request, DECLINE_REASON_DECLINED)
    logger.info("Provider %s declined wash request %s", provider.pk, wash_request.pk)
    return wash_request


def start_wash_request(wash_request_id, provider, *, actor_user=None, now=None, store=None):
    store = store or wash_request_store
    wash_request = _load_live(wash_request_id, store, now=now)
    if wash_request.status == STATUS_IN_PROGRESS and provider and wash_request.provider_id == provider.pk:
        return wash_request
    ensure_transition_allowed(wash_request.status, STATUS_IN_PROGRESS)
    ensure_bound_provider(wash_request, provider)

    with transaction.atomic():
        started = transition_wash_request_status(
            wash_request,
            STATUS_IN_PROGRESS,
            {"started_at": now or timezone.now()},
            provider_id=provider.pk,
            actor_user=actor_user,
            actor_role=ACTOR_PROVIDER,
            source=SOURCE_USER,
            note="Provider started the wash",
            store=store,
        )
        if started:
            notifications.notify_request_status_changed(wash_request, "started")
    if not started:
        return _settle_lost_write(wash_request.pk, STATUS_IN_PROGRESS, provider, store)
    return _reload(wash_request.pk, store)


def complete_wash_request(wash_request_id, provider, *, actor_user=None, now=None, store=None):
    store = store or wash_request_store
    wash_request = _reload(wash_request_id, store)
    if wash_request.status == STATUS_COMPLETED and provider and wash_request.provider_id == provider.pk:
        return wash_request
    ensure_transition_allowed(wash_request.status, STATUS_COMPLETED)
    ensure_bound_provider(wash_request, provider)

    with transaction.atomic():
        completed = transition_wash_request_status(
            wash_request,
            STATUS_COMPLETED,
            {"completed_at": now or timezone.now()},
            provider_id=provider.pk,
            actor_user=actor_user,
            actor_role=ACTOR_PROVIDER,
            source=SOURCE_USER,
            note="Provider completed the wash",
            store=store,
        )
        if completed:
            notifications.notify_request_completed(wash_request)
    if not completed:
        return _settle_lost_write(wash_request.pk, STATUS_COMPLETED, provider, store)
    return _reload(wash_request.pk, store)


def _settle_lost_write(wash_request_id, target_status, provider, store):
    current = _reload(wash_request_id, store)
    if current.status == target_status and current.provider_id == provider.pk:
        return current
    ensure_transition_allowed(current.status, target_status)
    ensure_bound_provider(current, provider)
    raise InvalidTransition("The request changed while this action was running. Please reload.", code="conflict")


def cancel_by_provider(wash_request_id, provider, *, actor_user=None, now=None, store=None, ledger=None):
    """Hand an accepted request back to the pool and hide it from ``provider``.

    The decline is recorded before the status write, so a retry after a
    failure in between completes the transition and a retry after success
    is a no-op.
    """
    store = store or wash_request_store
    ledger = ledger or decline_ledger
    if provider is None:
        raise forbidden("Only providers can cancel accepted jobs.")

    wash_request = _load_live(wash_request_id, store, now=now)
    if wash_request.status == STATUS_PENDING and wash_request.provider_id is None and ledger.has_declined(
        provider, wash_request
    ):
        return wash_request
    ensure_transition_allowed(wash_request.status, STATUS_PENDING)
    ensure_bound_provider(wash_request, provider)

    ledger.record(provider, wash_request, DECLINE_REASON_CANCELLED)
    with transaction.atomic():
        released = transition_wash_request_status(
            wash_request,
            STATUS_PENDING,
            {"provider": None, "accepted_at": None},
            provider_id=provider.pk,
            actor_user=actor_user,
            actor_role=ACTOR_PROVIDER,
            source=SOURCE_USER,
            note=f"Cancelled by {provider.name}, open to other providers again",
            store=store,
        )
        if released:
            notifications.notify_request_cancelled_by_provider(wash_request, provider)

    if not released:
        current = _reload(wash_request.pk, store)
        if current.status == STATUS_PENDING and current.provider_id is None:
            return current
        ensure_transition_allowed(current.status, STATUS_PENDING)
        ensure_bound_provider(current, provider)
        raise InvalidTransition("The request changed while this action was running. Please reload.", code="conflict")

    logger.info("Provider %s released wash request %s", provider.pk, wash_request.pk)
    return _reload(wash_request.pk, store)


def cancel_by_client(wash_request_id, client_company, *, actor_user=None, now=None, store=None):
    store = store or wash_request_store
    wash_request = _reload(wash_request_id, store)
    ensure_client_owns(wash_request, client_company)
    ensure_transition_allowed(wash_request.status, STATUS_CANCELLED)

    former_provider_id = wash_request.provider_id
    with transaction.atomic():
        cancelled = transition_wash_request_status(
            wash_request,
            STATUS_CANCELLED,
            {"provider": None, "cancelled_at": now or timezone.now(), "cancelled_by": "client"},
            provider_id=former_provider_id,
            actor_user=actor_user,
            actor_role=ACTOR_CLIENT,
            source=SOURCE_USER,
            note="Client cancelled the request",
            store=store,
        )
        if cancelled:
            notifications.notify_request_cancelled_by_client(wash_request, former_provider_id)

    if not cancelled:
        current = _reload(wash_request.pk, store)
        ensure_transition_allowed(current.status, STATUS_CANCELLED)
        return cancel_by_client(current.pk, client_company, actor_user=actor_user, now=now, store=store)
    return _reload(wash_request.pk, store)


def delete_wash_request(wash_request_id, client_company, *, store=None):
    store = store or wash_request_store
    wash_request = _reload(wash_request_id, store)
    ensure_client_owns(wash_request, client_company)
    if wash_request.is_terminal:
        raise InvalidTransition("Completed or cancelled requests are kept for your history.", code="not-deletable")

    snapshot = {
        "id": wash_request.pk,
        "client_company_id": wash_request.client_company_id,
        "provider_id": wash_request.provider_id,
        "address": wash_request.address,
        "when": timezone.localtime(wash_request.date_time).strftime("%Y-%m-%d %H:%M"),
    }
    with transaction.atomic():
        deleted = store.delete_if_status(wash_request.pk, [wash_request.status])
        if deleted:
            notifications.notify_request_deleted(snapshot)

    if not deleted:
        current = _reload(wash_request.pk, store)
        if current.is_terminal:
            raise InvalidTransition("Completed or cancelled requests are kept for your history.", code="not-deletable")
        return delete_wash_request(current.pk, client_company, store=store)
    logger.info("Wash request %s deleted by client company %s", snapshot["id"], client_company.pk)


def attach_invoice(wash_request_id, provider, invoice_url, *, store=None):
    store = store or wash_request_store
    wash_request = _reload(wash_request_id, store)
    ensure_bound_provider(wash_request, provider)
    if wash_request.status != STATUS_COMPLETED:
        raise InvalidTransition("Invoices can only be attached to completed washes.", code="not-completed")

    url = (invoice_url or "").strip()
    try:
        URLValidator(schemes=["http", "https"])(url)
    except DjangoValidationError as exc:
        raise ValidationError("Enter a valid invoice link.", code="invoice-url-invalid") from exc

    if not store.update_if_status(wash_request.pk, [STATUS_COMPLETED], provider_id=provider.pk, invoice_url=url):
        raise NotFound()
    return _reload(wash_request.pk, store)


def rate_provider(wash_request_id, client_company, score, comment="", *, store=None):
    store = store or wash_request_store
    wash_request = _reload(wash_request_id, store)
    ensure_client_owns(wash_request, client_company)
    if wash_request.status != STATUS_COMPLETED or wash_request.provider_id is None:
        raise InvalidTransition("Only completed washes can be rated.", code="not-completed")
    try:
        score_value = int(score)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Rating must be between 1 and 5.", code="score-invalid") from exc
    if score_value < 1 or score_value > 5:
        raise ValidationError("Rating must be between 1 and 5.", code="score-invalid")

    try:
        with transaction.atomic():
            rating = ProviderRating.objects.create(
                provider_id=wash_request.provider_id,
                client_company=client_company,
                wash_request=wash_request,
                score=score_value,
                comment=(comment or "").strip(),
            )
    except IntegrityError as exc:
        raise ValidationError("This wash has already been rated.", code="already-rated") from exc
    return rating
