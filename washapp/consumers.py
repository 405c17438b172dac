from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from .constants import PROVIDER_FEED_GROUP
from .models import ClientCompany, Provider


def client_company_group_name(client_company_id):
    return f"client_company_{int(client_company_id)}"


def provider_group_name(provider_id):
    return f"provider_{int(provider_id)}"


def _resolve_feed_groups(*, user_id):
    if not user_id:
        return {"ok": False, "reason": "unauthorized"}

    provider_id = Provider.objects.filter(user_id=user_id).values_list("id", flat=True).first()
    if provider_id:
        return {
            "ok": True,
            "viewer_role": "provider",
            "groups": [PROVIDER_FEED_GROUP, provider_group_name(provider_id)],
        }

    client_company_id = ClientCompany.objects.filter(user_id=user_id).values_list("id", flat=True).first()
    if client_company_id:
        return {
            "ok": True,
            "viewer_role": "client",
            "groups": [client_company_group_name(client_company_id)],
        }
    return {"ok": False, "reason": "forbidden"}


class WashRequestFeedConsumer(AsyncJsonWebsocketConsumer):
    """Pushes "something changed, reload" events for wash request lists.

    Providers hear about the shared pending pool and their own jobs; client
    companies hear about their own requests. Payloads carry ids and statuses
    only, clients refetch through the API.
    """

    CLOSE_CODES = {
        "unauthorized": 4401,
        "forbidden": 4403,
    }

    async def connect(self):
        user = self.scope.get("user")
        access = await database_sync_to_async(_resolve_feed_groups)(user_id=getattr(user, "id", None))
        if not access.get("ok"):
            reason = access.get("reason", "forbidden")
            await self.close(code=self.CLOSE_CODES.get(reason, 4403))
            return

        self.viewer_role = access["viewer_role"]
        self.group_names = access["groups"]
        for group_name in self.group_names:
            await self.channel_layer.group_add(group_name, self.channel_name)
        await self.accept()
        await self.send_json({"type": "feed.ready", "role": self.viewer_role})

    async def disconnect(self, close_code):
        for group_name in getattr(self, "group_names", []):
            await self.channel_layer.group_discard(group_name, self.channel_name)
        await super().disconnect(close_code)

    async def receive_json(self, content, **kwargs):
        event_type = (content or {}).get("type")
        if event_type == "ping":
            await self.send_json({"type": "pong"})

    async def wash_request_changed(self, event):
        await self.send_json(
            {
                "type": "wash_request.changed",
                "event": event.get("event", ""),
                "request_id": event.get("request_id"),
                "status": event.get("status", ""),
            }
        )
