import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "DATABASE_URL": "database.url",
    "MEDIA_PIPELINE_QUEUE_DB": "queue.db_path",
    "MEDIA_PIPELINE_STORAGE_ROOT": "storage.root",
    "MEDIA_PIPELINE_PUBLIC_BASE_URL": "storage.public_base_url",
    "OPENAI_API_KEY": "providers.text_api_key",
    "ELEVENLABS_API_KEY": "providers.speech_api_key",
    "HEYGEN_API_KEY": "providers.render_api_key",
    "HEYGEN_WEBHOOK_SECRET": "providers.render_webhook_secret",
    "SUBMAGIC_API_KEY": "providers.caption_api_key",
    "SUBMAGIC_WEBHOOK_URL": "providers.caption_webhook_url",
    "LOG_LEVEL": "logging.level",
}


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


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Build a nested override dict from recognised environment variables."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for name, path in ENV_OVERRIDES.items():
        value = environ.get(name)
        if not value:
            continue
        *parents, leaf = path.split(".")
        node = data
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return data


def resolve_config(
    cli_args: Dict[str, Any] = None,
    environ: Optional[Dict[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Default < Local (or MEDIA_PIPELINE_CONFIG) < Environment < CLI
    Returns validated Pydantic PipelineConfig model.
    """
    cli_args = cli_args or {}
    environ = os.environ if environ is None else environ

    # 1. Load default YAML
    config_data = load_yaml(DEFAULT_CONFIG_PATH)

    # 2. Merge local overrides
    local_path = Path(environ.get("MEDIA_PIPELINE_CONFIG", LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, load_yaml(local_path))

    # 3. Environment (secrets, deployment URLs)
    config_data = merge_dicts(config_data, env_overrides(environ))

    # 4. Validate and apply CLI overrides
    config = PipelineConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
