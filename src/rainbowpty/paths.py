from pathlib import Path

import platformdirs

APP_NAME = "rainbowpty"


def get_config() -> Path:
    """Get the configuration directory (created if necessary)."""
    return Path(platformdirs.user_config_dir(APP_NAME, ensure_exists=True))


def get_log() -> Path:
    """Get the log directory (created if necessary)."""
    return Path(platformdirs.user_log_dir(APP_NAME, ensure_exists=True))
