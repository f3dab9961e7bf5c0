"""Delta Stream - resumable client for a delta streaming API.

Keeps a single long-lived streaming connection open, detects stalls with a
heartbeat watchdog, decodes concatenated JSON deltas from arbitrary byte
chunks, and reconnects with backoff from the last cursor seen.
"""

from .backoff import BackoffController
from .client import DeltaClient, create_client
from .config import ClientConfig, StreamConfig, StreamParams
from .decoder import IncrementalJSONDecoder
from .errors import (
    BackoffExhaustedError,
    DecodeError,
    DeltaStreamError,
    ProtocolError,
    SetupError,
    TransportError,
)
from .events import Delta, StreamEvent, StreamEventType
from .stream import DeltaStream, StreamState
from .transport import (
    HTTPStreamTransport,
    MockStreamResponse,
    MockStreamTransport,
    StreamResponse,
    StreamTransport,
)
from .watchdog import HeartbeatWatchdog

__version__ = "0.1.0"

__all__ = [
    # Client
    "DeltaClient",
    "create_client",
    # Stream engine
    "DeltaStream",
    "StreamState",
    "BackoffController",
    "HeartbeatWatchdog",
    "IncrementalJSONDecoder",
    # Configuration
    "ClientConfig",
    "StreamConfig",
    "StreamParams",
    # Events
    "Delta",
    "StreamEvent",
    "StreamEventType",
    # Transports
    "StreamTransport",
    "StreamResponse",
    "HTTPStreamTransport",
    "MockStreamTransport",
    "MockStreamResponse",
    # Errors
    "DeltaStreamError",
    "SetupError",
    "TransportError",
    "ProtocolError",
    "DecodeError",
    "BackoffExhaustedError",
]
