"""Run lock and heartbeat bookkeeping for the ``wash_lifecycle`` worker."""
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .models import SchedulerHeartbeat, SchedulerLock

LIFECYCLE_WORKER_NAME = "wash_lifecycle"


def get_lock_ttl_seconds(interval_seconds):
    configured = int(getattr(settings, "LIFECYCLE_LOCK_TTL_SECONDS", max(interval_seconds * 3, 60)))
    return max(10, configured)


def get_heartbeat_stale_seconds():
    return max(10, int(getattr(settings, "LIFECYCLE_HEARTBEAT_STALE_SECONDS", 180)))


def get_health_token():
    return str(getattr(settings, "LIFECYCLE_HEALTH_TOKEN", "") or "").strip()


def acquire_lock(worker_name, owner, ttl_seconds, *, now=None):
    """Take the worker lock unless another owner holds an unexpired one."""
    now = now or timezone.now()
    locked_until = now + timedelta(seconds=ttl_seconds)
    with transaction.atomic():
        lock, _created = SchedulerLock.objects.select_for_update().get_or_create(
            worker_name=worker_name,
            defaults={"lock_owner": owner, "locked_until": locked_until, "last_acquired_at": now},
        )
        held_elsewhere = (
            lock.lock_owner
            and lock.lock_owner != owner
            and lock.locked_until is not None
            and lock.locked_until > now
        )
        if held_elsewhere:
            return False
        lock.lock_owner = owner
        lock.locked_until = locked_until
        lock.last_acquired_at = now
        lock.save(update_fields=["lock_owner", "locked_until", "last_acquired_at", "updated_at"])
    return True


def release_lock(worker_name, owner):
    now = timezone.now()
    SchedulerLock.objects.filter(worker_name=worker_name, lock_owner=owner).update(
        lock_owner="",
        locked_until=now - timedelta(seconds=1),
        updated_at=now,
    )


def mark_started(worker_name):
    now = timezone.now()
    heartbeat, _created = SchedulerHeartbeat.objects.get_or_create(worker_name=worker_name)
    SchedulerHeartbeat.objects.filter(pk=heartbeat.pk).update(
        run_count=F("run_count") + 1,
        last_started_at=now,
        last_error="",
        updated_at=now,
    )
    return now


def mark_success(worker_name):
    now = timezone.now()
    SchedulerHeartbeat.objects.filter(worker_name=worker_name).update(last_success_at=now, last_error="", updated_at=now)


def mark_error(worker_name, exc):
    now = timezone.now()
    SchedulerHeartbeat.objects.filter(worker_name=worker_name).update(
        last_error_at=now,
        last_error=str(exc)[:240],
        updated_at=now,
    )


def heartbeat_status(worker_name=LIFECYCLE_WORKER_NAME, *, now=None):
    now = now or timezone.now()
    stale_after_seconds = get_heartbeat_stale_seconds()
    heartbeat = SchedulerHeartbeat.objects.filter(worker_name=worker_name).first()
    if heartbeat is None:
        return {
            "ok": False,
            "worker_name": worker_name,
            "status": "missing",
            "stale_after_seconds": stale_after_seconds,
            "message": "No heartbeat recorded for this worker yet.",
        }

    reference_at = heartbeat.last_success_at or heartbeat.last_started_at or heartbeat.updated_at
    age_seconds = None
    is_stale = True
    if reference_at is not None:
        age_seconds = max(0, int((now - reference_at).total_seconds()))
        is_stale = age_seconds > stale_after_seconds

    return {
        "ok": not is_stale,
        "worker_name": worker_name,
        "status": "stale" if is_stale else "healthy",
        "stale_after_seconds": stale_after_seconds,
        "age_seconds": age_seconds,
        "run_count": heartbeat.run_count,
        "last_success_at": heartbeat.last_success_at.isoformat() if heartbeat.last_success_at else None,
        "last_error_at": heartbeat.last_error_at.isoformat() if heartbeat.last_error_at else None,
        "last_error": heartbeat.last_error,
    }
