"""
BEHAVIOR-AS-CONSTANTS
---------------------
Single source of truth for all behavioral limits of the sync engine.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Mapping, Tuple

# =============================================================================
# Channel reconnect policy
# =============================================================================

RECONNECT_BASE_DELAY_MS: Final[int] = 1_000
RECONNECT_MAX_DELAY_MS: Final[int] = 5_000
RECONNECT_MAX_ATTEMPTS: Final[int] = 10

# Opening handshake budget for a single connect attempt
CHANNEL_HANDSHAKE_TIMEOUT_S: Final[float] = 20.0

# =============================================================================
# Outbound dispatch waits
# =============================================================================

SEND_WAIT_POLL_MS: Final[int] = 500
CONNECT_WAIT_TIMEOUT_MS: Final[int] = 5_000
RESUMED_CONNECT_WAIT_TIMEOUT_MS: Final[int] = 5_000

SESSION_REJOIN_DELAY_MS: Final[int] = 500
SESSION_REJOIN_RETRIES: Final[int] = 1

# =============================================================================
# Stream assembly
# =============================================================================

# A user fallback message matching an existing user record within this
# window is treated as an echo of the same turn.
FALLBACK_DEDUP_WINDOW_MS: Final[int] = 2_000

# =============================================================================
# Personas
# =============================================================================

DEFAULT_PERSONA_HINT: Final[str] = "Manager"
DEFAULT_AGENT_LABEL: Final[str] = "AI"
USER_SENDER_LABEL: Final[str] = "You"

PERSONA_LABELS: Final[Mapping[str, str]] = {
    "Manager": "Sarah (Manager)",
}

DEFAULT_WELCOME_TEXT: Final[str] = (
    "Welcome! Your simulation is ready. Say hello to get started."
)

# =============================================================================
# Media transport (advisory only)
# =============================================================================

MEDIA_AGENT_IDENTITY_HINTS: Final[Tuple[str, ...]] = ("agent", "drew", "bot")
DEFAULT_MEDIA_AGENT_NAME: Final[str] = "Drew_2a0"

# =============================================================================
# REST
# =============================================================================

DEFAULT_API_BASE_URL: Final[str] = "http://localhost:3000/api"
DEFAULT_HTTP_TIMEOUT_S: Final[float] = 30.0

# =============================================================================
# User-visible diagnostics
# =============================================================================

MSG_CONNECTION_TIMEOUT: Final[str] = (
    "Connection timeout. Please check if the backend server is running "
    "and try again."
)
MSG_NOT_CONNECTED: Final[str] = (
    "Not connected to server. Attempting to reconnect... "
    "Please wait for the connection and try again."
)
MSG_SESSION_NOT_FOUND: Final[str] = (
    "Session not found. Please restart the simulation."
)
MSG_SESSION_STARTING: Final[str] = (
    "The simulation is still starting. Please wait a moment and try again."
)
MSG_RECONNECT_FAILED: Final[str] = (
    "Failed to reconnect to server. Please refresh the page."
)
MSG_SESSION_START_FAILED: Final[str] = (
    "Failed to start simulation: {reason}. Please try again."
)
MSG_SEND_FAILED: Final[str] = "Failed to send message: {reason}"
MSG_CHANNEL_ERROR: Final[str] = "Error: {reason}"
MSG_TASK_SUBMIT_FAILED: Final[str] = "Failed to submit task: {reason}"
