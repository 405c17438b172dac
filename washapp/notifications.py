"""Best-effort notifications sent after lifecycle transitions commit.

Nothing here may fail a transition: every callback runs after the database
commit and any exception is logged and dropped.
"""
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction
from django.utils import timezone

from .constants import PROVIDER_FEED_GROUP
from .consumers import client_company_group_name, provider_group_name
from .delivery import send_email, send_push
from .models import MobileDevice, Provider, WashRequest
from .visibility import matching_providers

logger = logging.getLogger(__name__)


def _run_safely(label, callback):
    try:
        callback()
    except Exception:
        logger.exception("Notification '%s' failed", label)


def schedule(label, callback):
    try:
        transaction.on_commit(lambda: _run_safely(label, callback))
    except Exception:
        logger.exception("Could not schedule notification '%s'", label)


def _format_when(value):
    return timezone.localtime(value).strftime("%Y-%m-%d %H:%M")


def _push_tokens_for_users(user_ids):
    user_ids = [user_id for user_id in user_ids if user_id]
    if not user_ids:
        return []
    return list(
        MobileDevice.objects.filter(user_id__in=user_ids, push_token__isnull=False)
        .exclude(push_token="")
        .values_list("push_token", flat=True)
    )


def _notify_users(*, emails, user_ids, title, body, data):
    for email in dict.fromkeys(item for item in emails if item):
        send_email(email, title, body)
    tokens = _push_tokens_for_users(user_ids)
    if tokens:
        send_push(tokens, title, body, data)


def publish_request_event(wash_request_id, event_type, *, status="", client_company_id=None, provider_ids=(), feed=False):
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    message = {
        "type": "wash_request.changed",
        "event": event_type,
        "request_id": wash_request_id,
        "status": status,
    }
    groups = []
    if feed:
        groups.append(PROVIDER_FEED_GROUP)
    if client_company_id:
        groups.append(client_company_group_name(client_company_id))
    groups.extend(provider_group_name(provider_id) for provider_id in provider_ids if provider_id)
    for group in groups:
        async_to_sync(channel_layer.group_send)(group, message)


def _load(wash_request_id):
    return (
        WashRequest.objects.select_related("client_company", "client_company__user", "provider", "provider__user")
        .prefetch_related("vehicles")
        .filter(id=wash_request_id)
        .first()
    )


def notify_request_created(wash_request):
    wash_request_id = wash_request.pk

    def deliver():
        item = _load(wash_request_id)
        if item is None:
            return
        publish_request_event(item.pk, "created", status=item.status, client_company_id=item.client_company_id, feed=True)
        providers = matching_providers(item)
        title = "New wash request available"
        body = f"{item.vehicles.count()} vehicle(s) at {item.address} on {_format_when(item.date_time)}."
        _notify_users(
            emails=[provider.notification_email() for provider in providers],
            user_ids=[provider.user_id for provider in providers],
            title=title,
            body=body,
            data={"type": "wash_request.created", "request_id": str(item.pk)},
        )

    schedule("request-created", deliver)


def notify_request_accepted(wash_request):
    wash_request_id = wash_request.pk

    def deliver():
        item = _load(wash_request_id)
        if item is None or item.provider is None:
            return
        publish_request_event(
            item.pk,
            "accepted",
            status=item.status,
            client_company_id=item.client_company_id,
            provider_ids=[item.provider_id],
            feed=True,
        )
        provider = item.provider
        body = (
            f"{provider.name} accepted your wash request for {_format_when(item.date_time)} at {item.address}."
        )
        if provider.phone:
            body = f"{body} Contact: {provider.phone}."
        _notify_users(
            emails=[item.client_company.notification_email()],
            user_ids=[item.client_company.user_id],
            title="Your wash request was accepted",
            body=body,
            data={"type": "wash_request.accepted", "request_id": str(item.pk)},
        )

    schedule("request-accepted", deliver)


def notify_request_cancelled_by_provider(wash_request, provider):
    wash_request_id = wash_request.pk
    provider_id = getattr(provider, "pk", provider)

    def deliver():
        item = _load(wash_request_id)
        if item is None:
            return
        publish_request_event(
            item.pk,
            "provider-cancelled",
            status=item.status,
            client_company_id=item.client_company_id,
            provider_ids=[provider_id],
            feed=True,
        )
        provider_name = Provider.objects.filter(id=provider_id).values_list("name", flat=True).first() or "The provider"
        _notify_users(
            emails=[item.client_company.notification_email()],
            user_ids=[item.client_company.user_id],
            title="A provider cancelled your wash request",
            body=(
                f"{provider_name} can no longer handle the wash on {_format_when(item.date_time)}. "
                "The request is open to other providers again."
            ),
            data={"type": "wash_request.provider_cancelled", "request_id": str(item.pk)},
        )

    schedule("request-cancelled-by-provider", deliver)


def _notify_former_provider(provider_id, *, title, body, data):
    provider = Provider.objects.select_related("user").filter(id=provider_id).first()
    if provider is None:
        return
    _notify_users(
        emails=[provider.notification_email()],
        user_ids=[provider.user_id],
        title=title,
        body=body,
        data=data,
    )


def notify_request_cancelled_by_client(wash_request, former_provider_id=None):
    wash_request_id = wash_request.pk
    client_company_id = wash_request.client_company_id
    when = _format_when(wash_request.date_time)
    address = wash_request.address

    def deliver():
        publish_request_event(
            wash_request_id,
            "client-cancelled",
            status="cancelled",
            client_company_id=client_company_id,
            provider_ids=[former_provider_id],
            feed=True,
        )
        if former_provider_id:
            _notify_former_provider(
                former_provider_id,
                title="A wash job was cancelled by the client",
                body=f"The wash on {when} at {address} was cancelled.",
                data={"type": "wash_request.client_cancelled", "request_id": str(wash_request_id)},
            )

    schedule("request-cancelled-by-client", deliver)


def notify_request_deleted(snapshot):
    def deliver():
        publish_request_event(
            snapshot["id"],
            "deleted",
            status="deleted",
            client_company_id=snapshot["client_company_id"],
            provider_ids=[snapshot.get("provider_id")],
            feed=True,
        )
        if snapshot.get("provider_id"):
            _notify_former_provider(
                snapshot["provider_id"],
                title="A wash job was removed by the client",
                body=f"The wash on {snapshot['when']} at {snapshot['address']} was deleted by the client.",
                data={"type": "wash_request.deleted", "request_id": str(snapshot["id"])},
            )

    schedule("request-deleted", deliver)


def notify_request_status_changed(wash_request, event_type):
    """Live list refresh only, for transitions nobody is emailed about."""
    wash_request_id = wash_request.pk
    status = wash_request.status
    client_company_id = wash_request.client_company_id
    provider_id = wash_request.provider_id

    schedule(
        f"request-{event_type}",
        lambda: publish_request_event(
            wash_request_id,
            event_type,
            status=status,
            client_company_id=client_company_id,
            provider_ids=[provider_id],
        ),
    )


def notify_request_completed(wash_request):
    wash_request_id = wash_request.pk

    def deliver():
        item = _load(wash_request_id)
        if item is None:
            return
        publish_request_event(
            item.pk,
            "completed",
            status=item.status,
            client_company_id=item.client_company_id,
            provider_ids=[item.provider_id],
        )
        provider_name = item.provider.name if item.provider_id else "Your provider"
        _notify_users(
            emails=[item.client_company.notification_email()],
            user_ids=[item.client_company.user_id],
            title="Wash completed",
            body=f"{provider_name} completed the wash at {item.address}. You can now rate the service.",
            data={"type": "wash_request.completed", "request_id": str(item.pk)},
        )

    schedule("request-completed", deliver)


def notify_requests_expired(wash_request_ids):
    ids = list(wash_request_ids)
    if not ids:
        return

    def deliver():
        rows = WashRequest.objects.filter(id__in=ids).values_list("id", "client_company_id")
        for wash_request_id, client_company_id in rows:
            publish_request_event(
                wash_request_id,
                "expired",
                status="cancelled",
                client_company_id=client_company_id,
                feed=True,
            )

    schedule("requests-expired", deliver)
