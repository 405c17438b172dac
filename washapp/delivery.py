import json
import logging
import urllib.error
import urllib.request

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def send_email(recipient, subject, body):
    recipient_value = (recipient or "").strip()
    if not recipient_value or not (subject or "").strip():
        return {"sent": False, "detail": "missing-recipient-or-subject"}
    if not bool(getattr(settings, "NOTIFICATION_EMAIL_ENABLED", True)):
        return {"sent": False, "detail": "email-disabled"}

    sent_count = send_mail(
        subject,
        body or "",
        getattr(settings, "DEFAULT_FROM_EMAIL", None),
        [recipient_value],
        fail_silently=False,
    )
    return {"sent": bool(sent_count), "detail": "smtp"}


def send_push(tokens, title, body, data=None):
    token_values = [token.strip() for token in tokens or [] if token and token.strip()]
    webhook_url = getattr(settings, "PUSH_WEBHOOK_URL", "").strip()
    webhook_token = getattr(settings, "PUSH_WEBHOOK_TOKEN", "").strip()
    debug_fallback = bool(getattr(settings, "PUSH_DEBUG_FALLBACK", True))

    if not token_values or not (title or "").strip():
        return {"sent": False, "detail": "missing-tokens-or-title"}
    if not bool(getattr(settings, "NOTIFICATION_PUSH_ENABLED", True)):
        return {"sent": False, "detail": "push-disabled"}

    if webhook_url:
        payload = [
            {"to": token, "title": title, "body": body or "", "data": dict(data or {}), "sound": "default"}
            for token in token_values
        ]
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if webhook_token:
            headers["Authorization"] = f"Bearer {webhook_token}"
        request = urllib.request.Request(
            webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=8) as response:
                status_code = getattr(response, "status", 200)
                if 200 <= status_code < 300:
                    return {"sent": True, "detail": f"webhook-{status_code}"}
                return {"sent": False, "detail": f"webhook-status-{status_code}"}
        except urllib.error.URLError as error:
            logger.warning("Push webhook failed: %s", error)
            if not debug_fallback:
                return {"sent": False, "detail": "webhook-error"}

    logger.info("PUSH DEBUG -> %d device(s) | %s | %s", len(token_values), title, body)
    if debug_fallback:
        return {"sent": True, "detail": "debug-fallback"}
    return {"sent": False, "detail": "no-provider-configured"}
