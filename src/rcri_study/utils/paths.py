"""
Path utilities for the study output tree.

Output layout:
    <output_folder>/
    ├── analysis_settings.csv
    └── <cdm_database_name>/
        ├── log.txt
        ├── Analysis_1/plpResult/     <- one bundle per analysis
        ├── ...
        └── export/                   <- redacted copies for sharing
"""

from importlib import resources
from pathlib import Path

RESULT_SUBDIR = "plpResult"
EXPORT_SUBDIR = "export"
LOG_FILENAME = "log.txt"
ANALYSIS_SETTINGS_FILENAME = "analysis_settings.csv"


def ensure_dir(path: str | Path) -> Path:
    """Create directory if it doesn't exist, return Path object."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def database_dir(output_folder: str | Path, cdm_database_name: str) -> Path:
    return Path(output_folder) / cdm_database_name


def analysis_result_dir(output_folder: str | Path, cdm_database_name: str, analysis_id: str) -> Path:
    """Bundle directory for one analysis: <output>/<db>/<analysis_id>/plpResult."""
    return database_dir(output_folder, cdm_database_name) / analysis_id / RESULT_SUBDIR


def packaged_settings_dir() -> Path:
    """Directory of the settings shipped inside the package."""
    return Path(str(resources.files("rcri_study") / "settings"))
