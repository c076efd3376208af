"""
YAML persistence for runtime overrides, saved configurations and the
settings store.

Reads tolerate a missing or empty file; writes go through a temporary file
in the same directory so a settings file is never left half written.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class YAMLConfigLoader:
    """Loads and saves mapping-shaped YAML documents."""

    @staticmethod
    def load_yaml(path: PathLike) -> Dict[str, Any]:
        """
        Load a YAML mapping.

        Args:
            path: File to read

        Returns:
            The top-level mapping; an empty dict for an empty file or a
            document whose top level is not a mapping

        Raises:
            FileNotFoundError: If the file doesn't exist
            yaml.YAMLError: If the document cannot be parsed
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"YAML file not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                logger.error(f"Failed to parse YAML file {path}: {e}")
                raise

        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning(
                f"Expected a mapping at the top of {path}, got {type(data).__name__}"
            )
            return {}
        return data

    @staticmethod
    def load_yaml_safe(
        path: PathLike, default: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Like ``load_yaml`` but returns ``default`` instead of raising."""
        try:
            return YAMLConfigLoader.load_yaml(path)
        except FileNotFoundError:
            logger.debug(f"No YAML file at {path}")
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Ignoring unreadable YAML file {path}: {e}")
        return dict(default or {})

    @staticmethod
    def save_yaml(data: Dict[str, Any], path: PathLike) -> None:
        """Write ``data`` atomically, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved YAML to {path}")
