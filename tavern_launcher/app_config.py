"""
Edits to a SillyTavern version's config.yaml.

Flags are rewritten in place line by line so that comments and layout in the
user's file survive; the result is parsed with PyYAML to confirm the edit
landed on the intended key before anything is written back.
"""

import logging
import re
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"

_KEY_LINE = re.compile(r"^(?P<indent> *)(?P<key>[A-Za-z0-9_]+):(?P<rest>[^\r\n]*)(?P<eol>\r?\n?)$")


def set_flag(text: str, keys: tuple[str, ...], value: bool) -> str:
    """
    Return text with the boolean at the nested mapping path `keys` set to value.

    Raises KeyError if the path does not exist in the document.
    """
    lines = text.splitlines(keepends=True)
    stack: list[tuple[int, str]] = []

    for i, line in enumerate(lines):
        match = _KEY_LINE.match(line)
        if not match:
            continue
        indent = len(match["indent"])
        while stack and stack[-1][0] >= indent:
            stack.pop()
        stack.append((indent, match["key"]))

        if tuple(key for _, key in stack) == tuple(keys):
            rest = match["rest"]
            comment = ""
            if "#" in rest:
                comment = "  #" + rest.split("#", 1)[1]
            literal = "true" if value else "false"
            lines[i] = f"{match['indent']}{match['key']}: {literal}{comment}{match['eol']}"
            return "".join(lines)

    raise KeyError(".".join(keys))


def _lookup(document, keys: tuple[str, ...]):
    for key in keys:
        if not isinstance(document, dict):
            return None
        document = document.get(key)
    return document


def apply_flag(path: Path, keys: tuple[str, ...], value: bool) -> bool:
    """
    Set a boolean flag in a YAML file.

    Returns False when the file or key is absent (nothing to change).
    Raises ValueError if the rewritten file does not parse to the new value.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"{path} does not exist, skipping {'.'.join(keys)}")
        return False

    text = path.read_text(encoding="utf-8")
    try:
        updated = set_flag(text, keys, value)
    except KeyError:
        logger.info(f"{'.'.join(keys)} not found in {path}, skipping")
        return False

    try:
        document = yaml.safe_load(updated)
    except yaml.YAMLError as e:
        raise ValueError(f"{path} is not valid YAML: {e}") from e

    if _lookup(document, keys) is not value:
        raise ValueError(f"Failed to set {'.'.join(keys)} in {path}")

    if updated != text:
        path.write_text(updated, encoding="utf-8")
    return True


def enable_security_override(version_path: Path) -> bool:
    """Allow SillyTavern to listen on all interfaces without a whitelist."""
    return apply_flag(Path(version_path) / CONFIG_FILE, ("securityOverride",), True)


def apply_speed_optimization(version_path: Path, enable: bool) -> bool:
    """Turn off the cache buster when optimizing so browsers keep static assets."""
    return apply_flag(Path(version_path) / CONFIG_FILE, ("cacheBuster", "enabled"), not enable)
