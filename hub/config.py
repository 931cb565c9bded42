"""Configuration settings for the Hub server."""

import os
from common.constants import (
    DEFAULT_HUB_HOST,
    DEFAULT_HUB_PORT,
    DEFAULT_HUB_ROOT,
    DEFAULT_SUPPRESSION_WINDOW_MS,
)


HUB_HOST = os.environ.get("SYNC_HUB_HOST", DEFAULT_HUB_HOST)

HUB_PORT = int(os.environ.get("SYNC_HUB_PORT", str(DEFAULT_HUB_PORT)))

HUB_ROOT = os.environ.get("SYNC_HUB_ROOT", DEFAULT_HUB_ROOT)

SUPPRESSION_WINDOW_SECONDS = int(
    os.environ.get("SYNC_SUPPRESSION_WINDOW_MS", str(DEFAULT_SUPPRESSION_WINDOW_MS))
) / 1000.0
