from src.realtime.channel import ClientSession, ReconnectState, StatusChannel

__all__ = ["ClientSession", "ReconnectState", "StatusChannel"]
