"""Global constants for karma-server."""

# Start line printed by the Karma start script once the server is listening
START_LINE_PATTERN = r"Started - port: (\d+)"

# Launch defaults
DEFAULT_NODE_EXECUTABLE = "node"
START_SCRIPT_NAME = "Start.js"
NODE_MODULES_DIR = "node_modules"
DEFAULT_ENCODING = "utf-8"

# Environment variables
LIB_DIR_ENV_VAR = "KARMA_SERVER_LIB_DIR"
NODE_PATH_ENV_VAR = "NODE_PATH"

# Shutdown escalation timeouts (seconds)
SIGINT_TIMEOUT = 1.0
SIGTERM_TIMEOUT = 1.5
SIGKILL_TIMEOUT = 1.0
