"""
URL routing for the collaboration WebSocket.

Example::

    from channels.auth import AuthMiddlewareStack
    from channels.routing import ProtocolTypeRouter, URLRouter
    from coedit.routing import websocket_urlpatterns

    application = ProtocolTypeRouter({
        "http": get_asgi_application(),
        "websocket": AuthMiddlewareStack(URLRouter(websocket_urlpatterns)),
    })
"""

from django.urls import path

from .websocket import CollaborationConsumer

websocket_urlpatterns = [
    path("ws/documents/<int:document_id>/", CollaborationConsumer.as_asgi()),
]
