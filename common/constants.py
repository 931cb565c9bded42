"""Project-wide constants (default ports, paths, timing windows)."""

DEFAULT_HUB_HOST: str = "0.0.0.0"
DEFAULT_HUB_PORT: int = 3000
DEFAULT_HUB_URL: str = "http://localhost:3000"
DEFAULT_HUB_ROOT: str = "./shared"
DEFAULT_EDGE_ROOT: str = "./local"

SYNC_ENDPOINT_PATH: str = "/sync"

DEFAULT_SUPPRESSION_WINDOW_MS: int = 500
DEFAULT_MODE_POLL_INTERVAL_SECONDS: float = 2.0
DEFAULT_RECONNECT_ATTEMPTS: int = 5
DEFAULT_RECONNECT_DELAY_SECONDS: float = 3.0
WEBSOCKET_HEARTBEAT_SECONDS: float = 30.0

PERMISSION_BITS_MASK: int = 0o777
ROOT_PROBE_FILENAME: str = ".test"
