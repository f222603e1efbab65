import os
import yaml
from pathlib import Path
from typing import Dict, Any, Mapping, Optional, Union
from .models import WorkerConfig

DEFAULT_CONFIG_DIR = Path("config")
DEFAULT_CONFIG_NAME = "default.yaml"
LOCAL_CONFIG_NAME = "local.yaml"

# Environment variable -> dotted config path. Later entries win on the same path.
ENV_OVERRIDES = {
    "BUCKET": "storage.bucket",
    "RECON_BUCKET": "storage.bucket",
    "RECON_S3_ENDPOINT": "storage.endpoint_url",
    "CLOUDFLARE_R2_ACCOUNT_ID": "storage.account_id",
    "CLOUDFLARE_R2_ACCESS_KEY_ID": "storage.access_key_id",
    "CLOUDFLARE_R2_SECRET_ACCESS_KEY": "storage.secret_access_key",
    "RECON_DB_PATH": "status_store.db_path",
    "QUEUE_CONNECTION_STRING": "queue.url",
    "RECON_QUEUE": "queue.queue_name",
    "RECON_LIB_DIR": "tools.lib_dir",
    "RECON_PROJECTS_ROOT": "workspace.projects_root",
    "BOT_TOKEN": "notify.bot_token",
    "SUPABASE_URL": "notify.viewer_base_url",
    "VIEWER_BASE_URL": "notify.viewer_base_url",
}


def get_config_value(config: Union[WorkerConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: WorkerConfig model or dict
        path: Dot-separated path like "storage.bucket"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, WorkerConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def set_config_value(config: Dict, path: str, value: Any) -> None:
    """Set a dotted path in a nested dict, creating sections as needed."""
    keys = path.split(".")
    node = config
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect config overrides from the environment."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            set_config_value(overrides, path, value)
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    config_dir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> WorkerConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic WorkerConfig model.
    """
    cli_args = cli_args or {}
    config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR

    # 1. Load default YAML
    config_data = load_yaml(config_dir / DEFAULT_CONFIG_NAME)

    # 2. Merge local overrides
    local_data = load_yaml(config_dir / LOCAL_CONFIG_NAME)
    config_data = merge_dicts(config_data, local_data)

    # 3. Merge environment
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate and apply CLI overrides
    config = WorkerConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
