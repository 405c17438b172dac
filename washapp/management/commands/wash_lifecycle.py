import time
from uuid import uuid4

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from washapp.expiry import sweep_expired_requests
from washapp.scheduler import (
    LIFECYCLE_WORKER_NAME,
    acquire_lock,
    get_lock_ttl_seconds,
    mark_error,
    mark_started,
    mark_success,
    release_lock,
)


class Command(BaseCommand):
    help = (
        "Optional ops sweep: cancels wash requests whose scheduled time has passed. "
        "Read paths already expire overdue requests, so nothing depends on this running "
        "(single shot unless --loop)."
    )

    def add_arguments(self, parser):
        parser.add_argument("--loop", action="store_true", help="Keep sweeping every --interval seconds.")
        parser.add_argument("--interval", type=int, default=60, help="Seconds between sweeps in --loop mode.")
        parser.add_argument("--max-runs", type=int, default=0, help="Stop after N sweeps in --loop mode (0 = no limit).")

    def handle(self, *args, **options):
        loop_mode = bool(options["loop"])
        interval = int(options["interval"])
        max_runs = int(options["max_runs"])
        if interval < 1:
            raise CommandError("--interval must be >= 1")
        if max_runs < 0:
            raise CommandError("--max-runs must be >= 0")

        owner = uuid4().hex
        ttl_seconds = get_lock_ttl_seconds(interval)
        run_count = 0
        try:
            while True:
                if not acquire_lock(LIFECYCLE_WORKER_NAME, owner, ttl_seconds):
                    self.stdout.write(self.style.WARNING("Sweep skipped: another worker currently holds the lock."))
                else:
                    run_count += 1
                    self._run_once(run_count)
                if not loop_mode or (max_runs and run_count >= max_runs):
                    break
                time.sleep(interval)
        except KeyboardInterrupt:
            self.stdout.write(self.style.WARNING("Sweep loop interrupted."))
        finally:
            release_lock(LIFECYCLE_WORKER_NAME, owner)

    def _run_once(self, run_number):
        started_at = mark_started(LIFECYCLE_WORKER_NAME)
        try:
            cancelled_ids = sweep_expired_requests()
        except Exception as exc:
            mark_error(LIFECYCLE_WORKER_NAME, exc)
            raise
        mark_success(LIFECYCLE_WORKER_NAME)
        stamp = timezone.localtime(started_at).strftime("%Y-%m-%d %H:%M:%S")
        self.stdout.write(
            self.style.SUCCESS(f"[{stamp}] Sweep #{run_number} completed, {len(cancelled_ids)} request(s) expired.")
        )
