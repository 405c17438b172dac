"""Which pending wash requests a provider may see and act on.

Rules, applied in order:

1. Requests the provider declined (or cancelled after accepting) are never
   shown again to that provider, however old the decline is.
2. Service match, by named policy (``VISIBILITY_SERVICE_MATCH_POLICY``):
   ``strict`` (default) shows a request only when the provider offers the
   service of every vehicle in it; ``lenient`` shows it when at least one
   vehicle's service is offered.
3. Service area: ``base_city`` / ``radius_km`` are available inputs, but no
   distance is computed. With ``VISIBILITY_CITY_FILTER_ENABLED`` the
   provider's base city must appear in the request address; otherwise this
   step keeps everything.
4. Soonest ``date_time`` first.

Each result is flagged ``recycled`` when any provider has declined it before.
"""
from dataclasses import dataclass

from django.conf import settings

from .constants import SERVICE_MATCH_LENIENT, SERVICE_MATCH_POLICIES, SERVICE_MATCH_STRICT
from .models import Provider, WashRequest
from .store import decline_ledger, wash_request_store


@dataclass(frozen=True)
class VisibleRequest:
    wash_request: WashRequest
    recycled: bool


def get_service_match_policy():
    configured = str(getattr(settings, "VISIBILITY_SERVICE_MATCH_POLICY", SERVICE_MATCH_STRICT) or "").strip().lower()
    if configured not in SERVICE_MATCH_POLICIES:
        return SERVICE_MATCH_STRICT
    return configured


def is_city_filter_enabled():
    return bool(getattr(settings, "VISIBILITY_CITY_FILTER_ENABLED", False))


def services_match(required_services, offered_services, policy=None):
    required = set(required_services)
    offered = set(offered_services)
    if not required:
        return False
    if (policy or get_service_match_policy()) == SERVICE_MATCH_LENIENT:
        return bool(required & offered)
    return required <= offered


def within_service_area(provider, wash_request):
    if not is_city_filter_enabled():
        return True
    base_city = (provider.base_city or "").strip().lower()
    if not base_city:
        return True
    return base_city in (wash_request.address or "").lower()


def filter_visible_requests(provider, pending_requests, declined_ids, recycled_ids, *, policy=None):
    """Pure part of the filter: no queries beyond the prefetched vehicles."""
    policy = policy or get_service_match_policy()
    offered = provider.offered_services()
    visible = []
    for wash_request in pending_requests:
        if wash_request.pk in declined_ids:
            continue
        if not services_match(wash_request.required_services(), offered, policy):
            continue
        if not within_service_area(provider, wash_request):
            continue
        visible.append(VisibleRequest(wash_request=wash_request, recycled=wash_request.pk in recycled_ids))
    visible.sort(key=lambda item: (item.wash_request.date_time, item.wash_request.pk))
    return visible


def visible_requests_for_provider(provider, *, policy=None, store=None, ledger=None):
    store = store or wash_request_store
    ledger = ledger or decline_ledger
    pending_requests = store.list_pending()
    declined_ids = ledger.declined_request_ids(provider)
    recycled_ids = ledger.recycled_request_ids([item.pk for item in pending_requests])
    return filter_visible_requests(provider, pending_requests, declined_ids, recycled_ids, policy=policy)


def can_provider_see(provider, wash_request, *, policy=None, ledger=None):
    ledger = ledger or decline_ledger
    if ledger.has_declined(provider, wash_request):
        return False
    if not services_match(wash_request.required_services(), provider.offered_services(), policy):
        return False
    return within_service_area(provider, wash_request)


def matching_providers(wash_request, *, policy=None, ledger=None):
    """Providers who would see ``wash_request`` in their list right now."""
    ledger = ledger or decline_ledger
    declined_by = ledger.decliner_ids(wash_request)
    required = wash_request.required_services()
    return [
        provider
        for provider in Provider.objects.select_related("user").order_by("id")
        if provider.pk not in declined_by
        and services_match(required, provider.offered_services(), policy)
        and within_service_area(provider, wash_request)
    ]
