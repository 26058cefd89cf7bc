# ANSI Color Codes
COLOR_GREEN = "\033[92m"
COLOR_RED = "\033[91m"
COLOR_RESET = "\033[0m"

# Status Messages
STATUS_FORWARDING = f"{COLOR_GREEN}Forwarding{COLOR_RESET}"
STATUS_LISTENING = f"{COLOR_GREEN}Listening{COLOR_RESET}"
STATUS_CLOSING = f"{COLOR_GREEN}Closing tunnel{COLOR_RESET}"
STATUS_FAILED = f"{COLOR_RED}Tunnel failed{COLOR_RESET}"

# Defaults
DEFAULT_SSH_PORT = 22
DEFAULT_HOP_TIMEOUT = 10.0
DEFAULT_KEEPALIVE = 30.0
KEEPALIVE_REQUEST = "keepalive@openssh.com"
AGENT_SOCK_ENV = "SSH_AUTH_SOCK"
SUPPORTED_NETWORKS = ("tcp", "tcp4", "tcp6")
COPY_BUFFER_SIZE = 32768
ACCEPT_POLL_INTERVAL = 0.5
