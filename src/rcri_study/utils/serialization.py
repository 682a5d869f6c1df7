"""
Serialization utilities for result bundles.
"""

import json
import logging
from pathlib import Path
from typing import Any

import joblib
import numpy as np

logger = logging.getLogger(__name__)


def _json_default(obj: Any):
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return None if not np.isfinite(obj) else float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    return str(obj)


def save_joblib(obj: Any, path: str | Path, compress: int = 3):
    """Save object using joblib."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    joblib.dump(obj, path, compress=compress)


def load_joblib(path: str | Path) -> Any:
    """Load object saved with save_joblib."""
    return joblib.load(path)


def save_json(obj: Any, path: str | Path, indent: int = 2):
    """Save object as JSON; numpy scalars and arrays are converted."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        json.dump(obj, f, indent=indent, default=_json_default)


def load_json(path: str | Path) -> Any:
    """Load JSON file."""
    with open(path) as f:
        return json.load(f)
