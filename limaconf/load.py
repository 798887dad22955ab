"""Loading of instance configuration files merged with the user's default and override files."""

from __future__ import annotations

import logging
import os
from typing import Any

import yaml

from .fill import fill_default
from .model import LimaYAML

logger = logging.getLogger(__name__)

DEFAULT_FILE = "default.yaml"
OVERRIDE_FILE = "override.yaml"
CONFIG_DIR = "_config"


class LoadError(ValueError):
    """Raised when a configuration document cannot be parsed."""


class _StrictLoader(yaml.SafeLoader):
    """A safe loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: _StrictLoader, node: yaml.MappingNode, deep: bool = False) -> Any:
    loader.flatten_mapping(node)
    seen: set[Any] = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=True)
        try:
            duplicate = key in seen
        except TypeError:
            continue
        if duplicate:
            raise yaml.constructor.ConstructorError(
                "while constructing a mapping",
                node.start_mark,
                f"found duplicate key {key!r}",
                key_node.start_mark,
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_StrictLoader.add_constructor(yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_mapping)


def parse_yaml(data: bytes | str, comment: str) -> LimaYAML:
    """Parse a configuration document; ``comment`` names it in error messages."""
    try:
        raw = yaml.load(data, Loader=_StrictLoader)
    except yaml.YAMLError as exc:
        raise LoadError(f"failed to unmarshal YAML ({comment}): {exc}") from exc
    try:
        return LimaYAML.from_dict(raw)
    except ValueError as exc:
        raise LoadError(f"failed to unmarshal YAML ({comment}): {exc}") from exc


def _default_config_dir() -> str:
    home = os.environ.get("LIMA_HOME", "")
    lima_home = os.path.abspath(home) if home else os.path.join(os.path.expanduser("~"), ".lima")
    return os.path.join(lima_home, CONFIG_DIR)


def _read_layer(path: str, kind: str, file_path: str) -> LimaYAML:
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except FileNotFoundError:
        return LimaYAML()
    logger.debug('Mixing "%s" into "%s"', path, file_path)
    return parse_yaml(data, f'{kind} file "{path}"')


def load(
    data: bytes | str,
    file_path: str | os.PathLike[str],
    config_dir: str | os.PathLike[str] | None = None,
) -> LimaYAML:
    """Parse a configuration and fill unset fields from default.yaml, override.yaml and built-ins.

    ``config_dir`` defaults to ``$LIMA_HOME/_config``. The result is not validated.
    """
    path = os.fspath(file_path)
    y = parse_yaml(data, f'main file "{path}"')
    directory = _default_config_dir() if config_dir is None else os.fspath(config_dir)
    d = _read_layer(os.path.join(directory, DEFAULT_FILE), "default", path)
    o = _read_layer(os.path.join(directory, OVERRIDE_FILE), "override", path)
    fill_default(y, d, o, path)
    return y