"""Constants for buildlock."""

# On-disk format
LOCK_VERSION = 2
STATE_SUFFIX = ".yaml"
MUTEX_SUFFIX = ".mutex"
TEMP_SUFFIX = ".tmp"

# Identity derivation
PROJECT_SUFFIXES = (".xcworkspace", ".xcodeproj")
FALLBACK_SLUG = "xcode-project"

# Defaults (seconds unless noted)
DEFAULT_MAX_REASON_LENGTH = 160  # characters
DEFAULT_POLL_INTERVAL = 10.0
MUTEX_RETRY_DELAY = 0.05
MUTEX_STALE_TIMEOUT = 60.0

# Environment overrides
ENV_CONFIG_PATH = "BUILDLOCK_CONFIG"
ENV_LOCK_DIR = "BUILDLOCK_LOCK_DIR"
ENV_MAX_REASON_LENGTH = "BUILDLOCK_MAX_REASON_LENGTH"
ENV_POLL_INTERVAL = "BUILDLOCK_POLL_INTERVAL"
ENV_MAX_WAIT = "BUILDLOCK_MAX_WAIT"

# Commands that drive the build-and-run path get a distinct status title
BUILD_AND_RUN_COMMAND = "build_and_run"
TOOL_RELEASE_NAME = "release_lock"
CLI_NAME = "buildlock"
