import os
from dotenv import load_dotenv

load_dotenv()

STATE_DIRNAME = ".flow"

# Workspace holding sources, stage work dirs and the persisted flow state.
# Can be overridden per flow file or on the command line.
DEFAULT_WORKSPACE = os.environ.get("SILICONSTAGE_WORKSPACE", "workspace")

# Global ceiling across all license classes.
DEFAULT_MAX_PARALLEL = int(os.environ.get("SILICONSTAGE_MAX_PARALLEL", "4"))

# A stage waiting on a license slot longer than this fails as a resource timeout.
RESOURCE_WAIT_SEC = float(os.environ.get("SILICONSTAGE_RESOURCE_WAIT_SEC", "1800"))
BACKOFF_START_SEC = float(os.environ.get("SILICONSTAGE_BACKOFF_START_SEC", "5"))
BACKOFF_MAX_SEC = float(os.environ.get("SILICONSTAGE_BACKOFF_MAX_SEC", "120"))
POLL_INTERVAL_SEC = float(os.environ.get("SILICONSTAGE_POLL_INTERVAL_SEC", "0.05"))

DEFAULT_STAGE_TIMEOUT_SEC = 3600

LOG_LEVEL = os.environ.get("SILICONSTAGE_LOG_LEVEL", "INFO")


def get_workspace_path(workspace=None):
    """
    Returns the active workspace directory.
    An explicit path wins; otherwise SILICONSTAGE_WORKSPACE or 'workspace/'
    relative to the current directory.
    """
    return os.path.abspath(workspace or DEFAULT_WORKSPACE)


def get_state_dir(workspace: str) -> str:
    return os.path.join(os.path.abspath(workspace), STATE_DIRNAME)
