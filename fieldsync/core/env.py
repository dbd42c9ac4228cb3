from __future__ import annotations

import os
from pathlib import Path


def load_env(path: Path | None = None) -> None:
    """
    Populate os.environ from dotenv files next to the project root.

    `.env` is read first and never replaces variables that already exist.
    `.env.local` is read second and may override `.env`, but never a variable
    that was exported by the shell before either file was read.
    """
    shell_keys = frozenset(os.environ)

    base = path or _project_env_path()
    for key, value in _read_pairs(base):
        os.environ.setdefault(key, value)

    if path is not None:
        return

    for key, value in _read_pairs(base.with_name(".env.local")):
        if key not in shell_keys:
            os.environ[key] = value


def _read_pairs(env_path: Path) -> list[tuple[str, str]]:
    if not env_path.is_file():
        return []
    pairs: list[tuple[str, str]] = []
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, _, value = line.partition("=")
        key = key.strip()
        if key:
            pairs.append((key, _unquote(value.strip())))
    return pairs


def _project_env_path() -> Path:
    return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


__all__ = ["load_env"]
