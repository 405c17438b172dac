import logging
from contextlib import contextmanager

from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import F
from django.utils import timezone

from .constants import DECLINE_REASON_DECLINED, STATUS_PENDING
from .exceptions import NotFound, StorageUnavailable
from .models import ProviderDecline, WashRequest, WashRequestVehicle

logger = logging.getLogger(__name__)

UNSET = object()


def _pk(value):
    return getattr(value, "pk", value)


@contextmanager
def storage_guard(operation):
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.warning("Storage failure during %s: %s", operation, exc)
        raise StorageUnavailable() from exc


class WashRequestStore:
    """Persistence for wash requests and their vehicle selections.

    Single-request writes are atomic. ``update_if_status`` is the conditional
    write used wherever two actors may race on the same row.
    """

    def base_queryset(self):
        return WashRequest.objects.select_related("client_company", "provider").prefetch_related(
            "vehicles__vehicle"
        )

    def create(self, fields, vehicle_assignments):
        with storage_guard("create"), transaction.atomic():
            wash_request = WashRequest.objects.create(**fields)
            WashRequestVehicle.objects.bulk_create(
                [
                    WashRequestVehicle(
                        wash_request=wash_request,
                        vehicle=assignment["vehicle"],
                        service_type=assignment["service_type"],
                        position=position,
                    )
                    for position, assignment in enumerate(vehicle_assignments)
                ]
            )
        return self.get_by_id(wash_request.id)

    def get_by_id(self, wash_request_id):
        with storage_guard("get_by_id"):
            return self.base_queryset().filter(id=_pk(wash_request_id)).first()

    def get_or_raise(self, wash_request_id):
        wash_request = self.get_by_id(wash_request_id)
        if wash_request is None:
            raise NotFound()
        return wash_request

    def update(self, wash_request_id, **fields):
        with storage_guard("update"):
            wash_request = WashRequest.objects.filter(id=_pk(wash_request_id)).first()
            if wash_request is None:
                raise NotFound()
            for name, value in fields.items():
                setattr(wash_request, name, value)
            wash_request.save(update_fields=[*fields.keys(), "updated_at"])
        return self.get_by_id(wash_request.id)

    def update_if_status(self, wash_request_id, expected_statuses, *, provider_id=UNSET, extra_filters=None, **fields):
        """Write ``fields`` only if the row is still in one of ``expected_statuses``.

        Returns True when exactly this call changed the row.
        """
        if isinstance(expected_statuses, str):
            expected_statuses = [expected_statuses]
        lookup = {"id": _pk(wash_request_id), "status__in": list(expected_statuses)}
        if provider_id is not UNSET:
            if provider_id is None:
                lookup["provider__isnull"] = True
            else:
                lookup["provider_id"] = provider_id
        lookup.update(extra_filters or {})
        with storage_guard("update_if_status"):
            updated = WashRequest.objects.filter(**lookup).update(
                version=F("version") + 1,
                updated_at=timezone.now(),
                **fields,
            )
        return updated == 1

    def delete(self, wash_request_id):
        with storage_guard("delete"):
            deleted_count, _details = WashRequest.objects.filter(id=_pk(wash_request_id)).delete()
        if not deleted_count:
            raise NotFound()

    def delete_if_status(self, wash_request_id, expected_statuses):
        with storage_guard("delete_if_status"):
            deleted_count, _details = WashRequest.objects.filter(
                id=_pk(wash_request_id),
                status__in=list(expected_statuses),
            ).delete()
        return deleted_count > 0

    def list_by_client(self, client_company_id, statuses=None):
        with storage_guard("list_by_client"):
            qs = self.base_queryset().filter(client_company_id=_pk(client_company_id))
            if statuses:
                qs = qs.filter(status__in=list(statuses))
            return list(qs.order_by("-created_at", "-id"))

    def list_by_provider(self, provider_id, statuses=None):
        with storage_guard("list_by_provider"):
            qs = self.base_queryset().filter(provider_id=_pk(provider_id))
            if statuses:
                qs = qs.filter(status__in=list(statuses))
            return list(qs.order_by("date_time", "id"))

    def list_pending(self):
        with storage_guard("list_pending"):
            return list(self.base_queryset().filter(status=STATUS_PENDING, provider__isnull=True))


class DeclineLedger:
    """Append-only record of providers that disengaged from a request."""

    def record(self, provider, wash_request, reason=DECLINE_REASON_DECLINED):
        provider_id = _pk(provider)
        wash_request_id = _pk(wash_request)
        with storage_guard("record_decline"):
            existing = ProviderDecline.objects.filter(provider_id=provider_id, wash_request_id=wash_request_id).first()
            if existing:
                return existing, False
            try:
                with transaction.atomic():
                    decline = ProviderDecline.objects.create(
                        provider_id=provider_id,
                        wash_request_id=wash_request_id,
                        reason=reason,
                    )
            except IntegrityError:
                # Lost an insert race against the same provider; keep the first row.
                return ProviderDecline.objects.get(provider_id=provider_id, wash_request_id=wash_request_id), False
        return decline, True

    def has_declined(self, provider, wash_request):
        with storage_guard("has_declined"):
            return ProviderDecline.objects.filter(
                provider_id=_pk(provider),
                wash_request_id=_pk(wash_request),
            ).exists()

    def declined_request_ids(self, provider):
        with storage_guard("declined_request_ids"):
            return set(ProviderDecline.objects.filter(provider_id=_pk(provider)).values_list("wash_request_id", flat=True))

    def recycled_request_ids(self, wash_request_ids):
        ids = [_pk(item) for item in wash_request_ids]
        if not ids:
            return set()
        with storage_guard("recycled_request_ids"):
            return set(
                ProviderDecline.objects.filter(wash_request_id__in=ids).values_list("wash_request_id", flat=True)
            )

    def decliner_ids(self, wash_request):
        with storage_guard("decliner_ids"):
            return set(ProviderDecline.objects.filter(wash_request_id=_pk(wash_request)).values_list("provider_id", flat=True))


wash_request_store = WashRequestStore()
decline_ledger = DeclineLedger()
