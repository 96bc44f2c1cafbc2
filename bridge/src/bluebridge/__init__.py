"""Bridge between the BlueBubbles client API and a local Messages daemon."""

from .config import BridgeConfig, load_config_from_env
from .rooms import GLOBAL_ROOM, RoomHub
from .send_cache import SendCache
from .server import create_app, main

__all__ = [
    "BridgeConfig",
    "GLOBAL_ROOM",
    "RoomHub",
    "SendCache",
    "create_app",
    "load_config_from_env",
    "main",
]
