"""
Channel lifecycle status.

Owned exclusively by ConnectionSupervisor; everything else only reads it.
Independent of the session lifecycle: a session may be ACTIVE while the
channel is RECONNECTING.
"""
from enum import Enum

class ChannelState(Enum):
    """Physical channel status as seen by the client."""
    DISCONNECTED = "DISCONNECTED"   # Not connected, no attempt in progress
    CONNECTING = "CONNECTING"       # First attempt, or fresh connect after a server close
    CONNECTED = "CONNECTED"         # Open and bound to the session (join-session sent)
    RECONNECTING = "RECONNECTING"   # Backing off after an unexpected drop
