"""Configuration constants for the mock HTTP server."""

HOST: str = "127.0.0.1"
PORT: int = 0
HTTPS_PORT: int = 0
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 10_485_760
MAX_TARGET_LENGTH: int = 8_192
LOG_FORMAT: str = "plain"
DEFAULT_METHOD: str = "GET"
DEFAULT_STATUS: int = 200
DEFAULT_CONTENT_TYPE: str = "application/json"
ANY_METHOD: str = "*"
