"""Global constants for llamarun."""

# Port policy for the llama-server child process

DEFAULT_PORT = 11435
DEFAULT_PORT_SCAN_SIZE = 20

# Ports used by earlier sessions that may still host a running server
LEGACY_PORT_START = 8080
LEGACY_PORT_END = 8099

LOOPBACK_HOST = "127.0.0.1"

# Readiness and probing
DEFAULT_READY_TIMEOUT_SECONDS = 180.0
DEFAULT_READY_POLL_SECONDS = 1.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 600.0

# Probed in priority order; the first HTTP 200 wins
HEALTH_ENDPOINTS: tuple[str, ...] = ("/v1/models", "/health", "/healthz")

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
COMPLETION_PATH = "/completion"
CHAT_MODEL_NAME = "llama"

# Executable layout under the tool root
LLAMA_RUNTIME_DIR = ("runtime", "llama")
LLAMA_SERVER_NAMES: tuple[str, ...] = ("llama-server", "server")

# Log capture
DEFAULT_LOG_LINES = 200
LOG_EXCERPT_MAX_CHARS = 2000

# Sampling defaults for /completion (generate)
GENERATE_DEFAULT_TEMPERATURE = 0.7
GENERATE_DEFAULT_TOP_P = 0.9
GENERATE_DEFAULT_MAX_TOKENS = 2048

# Sampling defaults for chat
CHAT_DEFAULT_TEMPERATURE = 0.5
CHAT_DEFAULT_MAX_TOKENS = 512
CHAT_FALLBACK_TOP_P = 0.9
MAX_TEMPERATURE = 2.0

# SSE
SSE_DATA_PREFIX = "data: "
SSE_DONE_SENTINEL = "[DONE]"

# Management server defaults
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 11400
RUNTIME_API_PREFIX = "/runtime"

# Environment variables
ENV_PORT = "LLAMA_PORT"
ENV_PORT_SCAN_SIZE = "LLAMA_PORT_SCAN_SIZE"
ENV_READY_TIMEOUT = "LLAMA_READY_TIMEOUT_SECONDS"
ENV_READY_POLL = "LLAMA_READY_POLL_SECONDS"
ENV_PROBE_TIMEOUT = "LLAMA_PROBE_TIMEOUT_SECONDS"
ENV_REQUEST_TIMEOUT = "LLAMA_REQUEST_TIMEOUT_SECONDS"
ENV_LOG_LINES = "LLAMA_LOG_LINES"
ENV_DEBUG = "LLAMARUN_DEBUG_RUNTIME"
ENV_SERVER_HOST = "LLAMARUN_HOST"
ENV_SERVER_PORT = "LLAMARUN_PORT"
