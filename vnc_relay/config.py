"""Central runtime configuration for the VNC relay.
Adjust ports/host here to match your environment; every value can also be
overridden from the command line (see main.py).
"""

# WebSocket listener
LISTEN_HOST = "0.0.0.0"
LISTEN_PORT = 3101
LISTEN_PATH = "/vnc"

# Framed side keep-alive and limits
PING_INTERVAL = 20
PING_TIMEOUT = 20
MAX_MESSAGE_SIZE = 2**20

# Stream side
IDLE_TIMEOUT = 30.0          # seconds without traffic on the TCP socket
READ_CHUNK_SIZE = 64 * 1024

# Process shutdown
SHUTDOWN_GRACE = 3.0         # forced exit after this many seconds

DEFAULT_SERVICE_ID = "unknown"

# Close codes sent to the browser
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

REASON_MISSING_TARGET = "Missing host or port parameters"
REASON_INVALID_PORT = "Invalid port parameter"
REASON_UPSTREAM_CLOSED = "VNC server disconnected"
REASON_UPSTREAM_ERROR = "VNC server connection error"
REASON_SHUTDOWN = "Server shutting down"

APP_NAME = "VNC Relay"
