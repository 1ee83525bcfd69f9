"""
Configuration for the task board server and client.

Server settings come from environment variables; client tuning values are
module constants that callers may override per instance.
"""

import os
from dataclasses import dataclass


# Enrollment policies for completing a task the caller does not participate in
ENROLLMENT_AUTO = "auto_enroll"
ENROLLMENT_REQUIRED = "require_participation"
ENROLLMENT_POLICIES = (ENROLLMENT_AUTO, ENROLLMENT_REQUIRED)

# Input limits
MAX_LOGIN_LENGTH = 50
MAX_TITLE_LENGTH = 200
MIN_CREDENTIAL_LENGTH = 3

# Client connection defaults
DEFAULT_SERVER_URL = "ws://127.0.0.1:8080/ws"
REQUEST_TIMEOUT_SECONDS = 20.0
RECONNECT_ATTEMPTS = 10
RECONNECT_DELAY_SECONDS = 1.0
RECONNECT_DELAY_MAX_SECONDS = 5.0

# Local snapshot cache
SNAPSHOT_MAX_AGE_SECONDS = 600
DEFAULT_CACHE_DIR = os.path.join(os.path.expanduser("~"), ".task_board")

# Number of applied correlation ids remembered by the reconciliation engine
CORRELATION_MEMORY = 512


@dataclass
class BoardSettings:
    """Server settings resolved from the environment."""
    database_path: str = "task_board.db"
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"
    enrollment_policy: str = ENROLLMENT_AUTO

    @classmethod
    def from_env(cls) -> "BoardSettings":
        """Build settings from TASK_BOARD_* environment variables."""
        settings = cls(
            database_path=os.getenv("TASK_BOARD_DB_PATH", cls.database_path),
            host=os.getenv("TASK_BOARD_HOST", cls.host),
            port=int(os.getenv("TASK_BOARD_PORT", str(cls.port))),
            log_level=os.getenv("TASK_BOARD_LOG_LEVEL", cls.log_level).upper(),
            enrollment_policy=os.getenv("TASK_BOARD_ENROLLMENT_POLICY", cls.enrollment_policy),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.enrollment_policy not in ENROLLMENT_POLICIES:
            raise ValueError(
                f"Enrollment policy must be one of: {list(ENROLLMENT_POLICIES)}"
            )
        if not 0 < self.port < 65536:
            raise ValueError(f"Port out of range: {self.port}")
