# src/deconv_benchmark/utils.py
from __future__ import annotations
import json
import os
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, Optional

TRUE_STRINGS = {"1", "t", "true", "yes", "y"}
FALSE_STRINGS = {"0", "f", "false", "no", "n", ""}


def abspath_any(p: Optional[str]) -> Optional[str]:
    """Expand ~ and return absolute path for files/dirs; None if blank."""
    if not p:
        return None
    q = Path(str(p)).expanduser()
    try:
        q = q if q.is_absolute() else q.resolve(strict=False)
    except OSError:
        q = Path(os.path.abspath(str(q)))
    return str(q)


def timestamped_run_root(root_name: str = "deconv_benchmark_runs") -> str:
    """~/deconv_benchmark_runs/2025-10-27_153012"""
    stamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
    root = Path.home() / root_name / stamp
    root.mkdir(parents=True, exist_ok=True)
    return str(root)


def as_bool(value: Any) -> bool:
    """Normalize CLI-style booleans ("true", "0", True, ...)."""
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in TRUE_STRINGS:
        return True
    if s in FALSE_STRINGS:
        return False
    raise ValueError(f"Cannot interpret {value!r} as a boolean")


def write_json(path: str, payload: Dict[str, Any]) -> str:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False, default=str)
    return path


__all__ = ["abspath_any", "timestamped_run_root", "as_bool", "write_json"]
