from api.routes import router
from api.websocket import ConnectionManager, handle_websocket

__all__ = ["router", "ConnectionManager", "handle_websocket"]
