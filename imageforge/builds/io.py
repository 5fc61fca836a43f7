"""Build configuration loading.

Build configurations are YAML or JSON files validated into ``BuildConfig``.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from imageforge.builds.schema import BuildConfig


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_build_config(path: Path) -> BuildConfig:
    """Load and validate a build configuration from YAML or JSON.

    Relative package and media paths are resolved against the directory of
    the configuration file.

    Args:
        path: Path to a .yaml/.yml/.json file.

    Returns:
        Validated BuildConfig.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
        ValueError: If the extension is unsupported or content is malformed.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(f"Unsupported build config format: {path.suffix}")

    return BuildConfig.model_validate(_resolve_paths(data, path.parent))


def _resolve_paths(data: dict[str, Any], base: Path) -> dict[str, Any]:
    """Resolve relative ``path`` entries against ``base``."""
    resolved = dict(data)

    for key in ("updates", "drivers"):
        items = resolved.get(key)
        if not isinstance(items, list):
            continue
        new_items = []
        for item in items:
            if isinstance(item, dict) and item.get("path"):
                item = dict(item)
                item["path"] = str(_resolve(base, item["path"]))
            new_items.append(item)
        resolved[key] = new_items

    media = resolved.get("customization_media")
    if isinstance(media, str):
        resolved["customization_media"] = str(_resolve(base, media))

    return resolved


def _resolve(base: Path, value: str) -> Path:
    p = Path(value).expanduser()
    return p if p.is_absolute() else (base / p).resolve()


__all__ = ["load_build_config", "load_json", "load_yaml"]
