import logging
import traceback

from django.conf import settings
from django.core.exceptions import PermissionDenied, SuspiciousOperation
from django.db import DatabaseError
from django.http import Http404

from .exceptions import WashRequestError
from .models import ErrorLog

logger = logging.getLogger(__name__)


def get_traceback_max_chars():
    return max(500, int(getattr(settings, "ERROR_LOG_TRACEBACK_MAX_CHARS", 12000)))


def get_message_max_chars():
    return max(80, int(getattr(settings, "ERROR_LOG_MESSAGE_MAX_CHARS", 500)))


def client_ip(request):
    forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()[:64]
    return request.META.get("REMOTE_ADDR", "")[:64]


class ErrorLoggingMiddleware:
    """Store unexpected server errors in ``ErrorLog`` for admin triage.

    Lifecycle errors (``WashRequestError``) are answered by the API layer and
    never reach this hook; anything else that escapes a view is recorded.
    """

    ignored_exceptions = (Http404, PermissionDenied, SuspiciousOperation, WashRequestError)

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        if not getattr(settings, "ERROR_LOGGING_ENABLED", True):
            return None
        if isinstance(exception, self.ignored_exceptions):
            return None

        user = getattr(request, "user", None)
        try:
            ErrorLog.objects.create(
                path=(request.path or "")[:300],
                method=(request.method or "")[:10],
                status_code=int(getattr(exception, "status_code", 500) or 500),
                message=str(exception)[: get_message_max_chars()] or exception.__class__.__name__,
                traceback="".join(
                    traceback.format_exception(type(exception), exception, exception.__traceback__)
                )[: get_traceback_max_chars()],
                request_id=request.headers.get("X-Request-ID", "")[:120],
                ip_address=client_ip(request),
                user_agent=request.META.get("HTTP_USER_AGENT", "")[:255],
                user=user if user is not None and user.is_authenticated else None,
            )
        except DatabaseError:
            logger.exception("Could not persist error log entry for %s", request.path)
        return None
