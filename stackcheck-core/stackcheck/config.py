import logging
import os
from typing import List

from stackcheck import constants
from stackcheck.constants import CONFIG_DIR, LOG_LEVELS, TRUE_STRINGS

LOG = logging.getLogger(__name__)


def eval_log_type(env_var_name: str) -> str | bool:
    """Get the log type from environment variable"""
    sc_log = os.environ.get(env_var_name, "").lower().strip()
    return sc_log if sc_log in LOG_LEVELS else False


def is_env_true(env_var_name: str) -> bool:
    """Whether the given environment variable has a truthy value."""
    return os.environ.get(env_var_name, "").lower().strip() in TRUE_STRINGS


def load_environment(profiles: str = None, env=os.environ) -> List[str]:
    """Loads the environment variables from ~/.stackcheck/{profile}.env, for each profile listed in the profiles.
    :param env: environment to load profile to. Defaults to `os.environ`
    :param profiles: a comma separated list of profiles to load (defaults to "default")
    :returns str: the list of the actually loaded profiles (might be the fallback)
    """
    if not profiles:
        profiles = "default"

    profiles = profiles.split(",")
    environment = {}
    import dotenv

    for profile in profiles:
        profile = profile.strip()
        path = os.path.join(CONFIG_DIR, f"{profile}.env")
        if not os.path.exists(path):
            continue
        environment.update(dotenv.dotenv_values(path))

    for k, v in environment.items():
        # we do not want to override the environment
        if k not in env and v is not None:
            env[k] = v

    return profiles


def _int_env(env_var_name: str, default: int) -> int:
    value = os.environ.get(env_var_name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        LOG.warning("Ignoring non-numeric value for %s: %s", env_var_name, value)
        return default


# profiles are loaded before any other variable is read
load_environment(os.environ.get("CONFIG_PROFILE"))

# whether to enable debug output
DEBUG = is_env_true("DEBUG")

# log level, one of LOG_LEVELS
SC_LOG = eval_log_type("SC_LOG")

# region used by the orchestrator client
AWS_REGION = (
    os.environ.get("AWS_REGION")
    or os.environ.get("AWS_DEFAULT_REGION")
    or constants.DEFAULT_AWS_REGION
)

# custom endpoint of the orchestrator, e.g. a local emulator
SC_ENDPOINT_URL = os.environ.get("SC_ENDPOINT_URL", "").strip() or None

# seconds between two status polls while waiting for a deployment
SC_POLL_INTERVAL = _int_env("SC_POLL_INTERVAL", 5)

# seconds to wait for a deployment to reach a terminal status
SC_DEPLOY_TIMEOUT = _int_env("SC_DEPLOY_TIMEOUT", 1800)

# whether stateful resources must declare their DeletionPolicy explicitly
REQUIRE_EXPLICIT_RETENTION = is_env_true("REQUIRE_EXPLICIT_RETENTION")

# whether resource types outside the known taxonomy are rejected (instead of logged)
STRICT_RESOURCE_TYPES = is_env_true("STRICT_RESOURCE_TYPES")


def is_trace_logging_enabled():
    if SC_LOG:
        log_level = str(SC_LOG).upper()
        return log_level.lower() in constants.TRACE_LOG_LEVELS
    return False
