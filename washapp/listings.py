"""Read paths. Each one runs the scoped expiry sweep before reading."""
from .constants import PROVIDER_BOUND_STATUSES, STATUS_COMPLETED, STATUS_PENDING
from .exceptions import NotFound, forbidden
from .expiry import expire_before_read, sweep_before_read
from .store import wash_request_store
from .visibility import can_provider_see, visible_requests_for_provider


def list_client_requests(client_company, *, statuses=None, store=None):
    store = store or wash_request_store
    sweep_before_read(client_company=client_company)
    return store.list_by_client(client_company.pk, statuses=statuses)


def get_client_request(client_company, wash_request_id, *, store=None):
    store = store or wash_request_store
    wash_request = store.get_or_raise(wash_request_id)
    if wash_request.client_company_id != client_company.pk:
        raise NotFound()
    if expire_before_read(wash_request, store=store):
        wash_request = store.get_or_raise(wash_request_id)
    return wash_request


def list_client_invoices(client_company, *, store=None):
    return [
        item
        for item in list_client_requests(client_company, statuses=[STATUS_COMPLETED], store=store)
        if item.invoice_url
    ]


def list_visible_requests(provider, *, store=None):
    sweep_before_read()
    return visible_requests_for_provider(provider, store=store)


def list_provider_jobs(provider, *, statuses=None, store=None):
    store = store or wash_request_store
    sweep_before_read(provider=provider)
    return store.list_by_provider(provider.pk, statuses=statuses or PROVIDER_BOUND_STATUSES)


def list_provider_invoices(provider, *, store=None):
    return [item for item in list_provider_jobs(provider, statuses=[STATUS_COMPLETED], store=store) if item.invoice_url]


def get_provider_request(provider, wash_request_id, *, store=None):
    """A request is readable by the provider bound to it, or by any provider
    that would currently see it in the pending list."""
    store = store or wash_request_store
    wash_request = store.get_or_raise(wash_request_id)
    if expire_before_read(wash_request, store=store):
        wash_request = store.get_or_raise(wash_request_id)
    if wash_request.provider_id == provider.pk:
        return wash_request
    if wash_request.provider_id is None and wash_request.status == STATUS_PENDING and can_provider_see(provider, wash_request):
        return wash_request
    raise forbidden("This wash request is not available to you.")
