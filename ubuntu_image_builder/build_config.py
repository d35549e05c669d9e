from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

import yaml


@dataclass(frozen=True)
class BuildConfig:
    """Defaults for the common command line options, read from YAML."""

    raw: Dict[str, Any]

    def _str(self, key: str) -> str:
        value = self.raw.get(key)
        return "" if value is None else str(value)

    @property
    def image_size(self) -> str:
        return self._str("image_size")

    @property
    def image_file_list(self) -> str:
        return self._str("image_file_list")

    @property
    def cloud_init(self) -> str:
        return self._str("cloud_init")

    @property
    def disk_info(self) -> str:
        return self._str("disk_info")

    @property
    def output_dir(self) -> str:
        return self._str("output_dir")

    @property
    def workdir(self) -> str:
        return self._str("workdir")

    @property
    def log(self) -> str:
        return self._str("log")

    @property
    def hooks_directories(self) -> List[str]:
        value = self.raw.get("hooks_directories") or []
        if isinstance(value, str):
            return [p for p in value.split(",") if p]
        return [str(p) for p in value]


def load_build_config(path: str) -> BuildConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("build config must be YAML")

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping/object")

    return BuildConfig(raw=raw)
