from django.urls import re_path

from .consumers import WashRequestFeedConsumer

websocket_urlpatterns = [
    re_path(r"^ws/requests/$", WashRequestFeedConsumer.as_asgi()),
]
