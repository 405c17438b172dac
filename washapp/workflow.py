import logging

from .constants import (
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
)
from .exceptions import InvalidTransition
from .models import WorkflowEvent
from .store import UNSET, wash_request_store

logger = logging.getLogger(__name__)


WASH_REQUEST_ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_ACCEPTED, STATUS_CANCELLED},
    STATUS_ACCEPTED: {STATUS_IN_PROGRESS, STATUS_PENDING, STATUS_CANCELLED},
    STATUS_IN_PROGRESS: {STATUS_COMPLETED},
    STATUS_COMPLETED: set(),
    STATUS_CANCELLED: set(),
}


def is_transition_allowed(current_status, next_status):
    return next_status in WASH_REQUEST_ALLOWED_TRANSITIONS.get(current_status, set())


def ensure_transition_allowed(current_status, next_status):
    if not is_transition_allowed(current_status, next_status):
        raise InvalidTransition(current_status=current_status, target_status=next_status)


def create_workflow_event(
    wash_request,
    *,
    from_status,
    to_status,
    actor_user=None,
    actor_role="system",
    source="system",
    note="",
):
    return WorkflowEvent.objects.create(
        wash_request_id=getattr(wash_request, "pk", wash_request),
        from_status=from_status,
        to_status=to_status,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=(note or "")[:240],
    )


def transition_wash_request_status(
    wash_request,
    next_status,
    fields=None,
    *,
    provider_id=UNSET,
    extra_filters=None,
    actor_user=None,
    actor_role="system",
    source="system",
    note="",
    store=None,
):
    """Move ``wash_request`` from its loaded status to ``next_status``.

    The write is conditional on the row still holding the status that was
    loaded (and ``provider_id`` / ``extra_filters`` when given), so a caller
    that lost a race gets ``False`` back and must re-read. Illegal moves raise
    ``InvalidTransition`` before anything is written.
    """
    store = store or wash_request_store
    current_status = wash_request.status
    ensure_transition_allowed(current_status, next_status)

    update_fields = dict(fields or {})
    changed = store.update_if_status(
        wash_request.pk,
        [current_status],
        provider_id=provider_id,
        extra_filters=extra_filters,
        status=next_status,
        **update_fields,
    )
    if not changed:
        return False

    wash_request.status = next_status
    for name, value in update_fields.items():
        setattr(wash_request, name, value)
    create_workflow_event(
        wash_request,
        from_status=current_status,
        to_status=next_status,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=note,
    )
    logger.info(
        "Wash request %s: %s -> %s (%s/%s)",
        wash_request.pk,
        current_status,
        next_status,
        actor_role,
        source,
    )
    return True
