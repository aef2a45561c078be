import json
import logging
import os
import platform
from functools import lru_cache

from dotenv import load_dotenv, find_dotenv


def _load_environment() -> None:
    explicit_path = os.environ.get("BIBLETTS_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def get_version():
    """Return the current version of the application."""
    from bibletts import __version__

    return __version__


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("BIBLETTS_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    data_root = os.environ.get("BIBLETTS_DATA") or os.environ.get("BIBLETTS_DATA_DIR")
    if data_root:
        try:
            return ensure_directory(os.path.join(data_root, "settings"))
        except OSError:
            pass

    from platformdirs import user_config_dir

    if platform.system() != "Windows":
        legacy_dir = os.path.join(os.path.expanduser("~"), ".config", "bibletts")
        if os.path.exists(legacy_dir):
            return ensure_directory(legacy_dir)

    config_dir = user_config_dir("bibletts", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


@lru_cache(maxsize=1)
def get_user_output_root():
    override = os.environ.get("BIBLETTS_OUTPUT_ROOT")
    if override:
        return ensure_directory(override)

    data_root = os.environ.get("BIBLETTS_DATA") or os.environ.get("BIBLETTS_DATA_DIR")
    if data_root:
        return ensure_directory(os.path.join(data_root, "outputs"))

    from platformdirs import user_data_dir

    return ensure_directory(os.path.join(user_data_dir("bibletts", appauthor=False), "outputs"))


def get_user_output_path(folder=None):
    root = get_user_output_root()
    if folder:
        return ensure_directory(os.path.join(root, folder))
    return root


def load_config():
    try:
        with open(get_user_config_path(), "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logging.getLogger(__name__).warning("Ignoring unreadable config file: %s", exc)
        return {}


def coerce_int(value, default):
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def coerce_float(value, default):
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default
