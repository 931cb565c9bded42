"""Configuration settings for an Edge replica."""

import os
from common.constants import (
    DEFAULT_EDGE_ROOT,
    DEFAULT_HUB_URL,
    DEFAULT_MODE_POLL_INTERVAL_SECONDS,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_DELAY_SECONDS,
    DEFAULT_SUPPRESSION_WINDOW_MS,
)


HUB_URL = os.environ.get("SYNC_HUB_URL", DEFAULT_HUB_URL)

EDGE_ROOT = os.environ.get("SYNC_EDGE_ROOT", DEFAULT_EDGE_ROOT)

SUPPRESSION_WINDOW_SECONDS = int(
    os.environ.get("SYNC_SUPPRESSION_WINDOW_MS", str(DEFAULT_SUPPRESSION_WINDOW_MS))
) / 1000.0

MODE_POLL_INTERVAL = float(
    os.environ.get("SYNC_MODE_POLL_INTERVAL", str(DEFAULT_MODE_POLL_INTERVAL_SECONDS))
)

RECONNECT_ATTEMPTS = int(os.environ.get("SYNC_RECONNECT_ATTEMPTS", str(DEFAULT_RECONNECT_ATTEMPTS)))

RECONNECT_DELAY = float(os.environ.get("SYNC_RECONNECT_DELAY", str(DEFAULT_RECONNECT_DELAY_SECONDS)))
