"""Utility modules for logging, serialization and output paths."""

from rcri_study.utils.logging import log_section, setup_logger
from rcri_study.utils.paths import analysis_result_dir, ensure_dir
from rcri_study.utils.serialization import load_joblib, load_json, save_joblib, save_json

__all__ = [
    "setup_logger",
    "log_section",
    "ensure_dir",
    "analysis_result_dir",
    "save_joblib",
    "load_joblib",
    "save_json",
    "load_json",
]
