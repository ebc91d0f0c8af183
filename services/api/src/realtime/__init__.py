from .gateway import BroadcastGateway, Connection, get_gateway

__all__ = ["BroadcastGateway", "Connection", "get_gateway"]
