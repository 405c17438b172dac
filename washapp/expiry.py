"""Lazy expiry of wash requests whose scheduled time has passed.

There is no timer: read paths call :func:`sweep_before_read` before listing,
and the ``wash_lifecycle`` management command can run a global sweep on
demand. A request is overdue when it is still ``pending`` or ``accepted``
and its ``date_time`` is strictly before "now"; overdue requests become
``cancelled`` and lose their provider binding.
"""
import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from .constants import (
    EXPIRABLE_STATUSES,
    SOURCE_SWEEPER,
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_PENDING,
)
from .exceptions import StorageUnavailable
from .models import WashRequest
from .notifications import notify_requests_expired
from .store import storage_guard, wash_request_store
from .workflow import transition_wash_request_status

logger = logging.getLogger(__name__)


def is_expired_pending(wash_request, now):
    return wash_request.status == STATUS_PENDING and wash_request.date_time < now


def is_expired_accepted(wash_request, now):
    return wash_request.status == STATUS_ACCEPTED and wash_request.date_time < now


def is_overdue(wash_request, now):
    return is_expired_pending(wash_request, now) or is_expired_accepted(wash_request, now)


def find_overdue(wash_requests, now):
    return [item for item in wash_requests if is_overdue(item, now)]


def _expire(wash_request, reference, store):
    note = "Scheduled time passed before a provider accepted"
    if wash_request.status == STATUS_ACCEPTED:
        note = "Scheduled time passed before work started"
    # Status write and workflow event land together or not at all.
    with transaction.atomic():
        return transition_wash_request_status(
            wash_request,
            STATUS_CANCELLED,
            {"provider": None, "cancelled_at": reference, "cancelled_by": "system"},
            extra_filters={"date_time__lt": reference},
            actor_role="system",
            source=SOURCE_SWEEPER,
            note=note,
            store=store,
        )


def sweep_expired_requests(*, now=None, client_company=None, provider=None, statuses=None, store=None):
    """Cancel every overdue request in scope and return the cancelled ids.

    Scope narrows to one client company and/or one bound provider when given.
    Re-running with no intervening change cancels nothing.
    """
    store = store or wash_request_store
    reference = now or timezone.now()
    target_statuses = set(statuses or EXPIRABLE_STATUSES) & EXPIRABLE_STATUSES

    with storage_guard("sweep_expired_requests"):
        qs = WashRequest.objects.filter(status__in=sorted(target_statuses), date_time__lt=reference)
        if client_company is not None:
            qs = qs.filter(client_company_id=getattr(client_company, "pk", client_company))
        if provider is not None:
            qs = qs.filter(provider_id=getattr(provider, "pk", provider))
        candidates = list(qs.only("id", "status", "date_time", "provider_id", "client_company_id"))

    cancelled_ids = []
    for wash_request in find_overdue(candidates, reference):
        if _expire(wash_request, reference, store):
            cancelled_ids.append(wash_request.pk)

    if cancelled_ids:
        logger.info("Expiry sweep cancelled %d wash request(s): %s", len(cancelled_ids), cancelled_ids)
        notify_requests_expired(cancelled_ids)
    return cancelled_ids


def expire_if_overdue(wash_request, *, now=None, store=None):
    reference = now or timezone.now()
    if not is_overdue(wash_request, reference):
        return False
    expired = _expire(wash_request, reference, store or wash_request_store)
    if expired:
        logger.info("Wash request %s expired on access", wash_request.pk)
        notify_requests_expired([wash_request.pk])
    return expired


def sweep_before_read(**scope):
    """Run a scoped sweep without letting its failure block the caller's read."""
    try:
        with transaction.atomic():
            return sweep_expired_requests(**scope)
    except (StorageUnavailable, DatabaseError):
        logger.warning("Expiry sweep failed, continuing with possibly stale statuses", exc_info=True)
        return []


def expire_before_read(wash_request, *, now=None, store=None):
    """Single-request counterpart of :func:`sweep_before_read`."""
    try:
        with transaction.atomic():
            return expire_if_overdue(wash_request, now=now, store=store)
    except (StorageUnavailable, DatabaseError):
        logger.warning("Expiry of wash request %s failed, returning its stored status", wash_request.pk, exc_info=True)
        return False
