"""
rcri-study: External validation of the Revised Cardiac Risk Index

Scores a target population from an OMOP CDM database with the fixed RCRI
point model, evaluates discrimination, calibration and clinical utility,
optionally recalibrates, and packages redacted results for sharing.
"""

# Enable pandas Copy-on-Write for pandas 3.0 compatibility and better memory efficiency
# See: https://pandas.pydata.org/docs/user_guide/copy_on_write.html
import pandas as pd

pd.options.mode.copy_on_write = True

__version__ = "1.0.0"

from rcri_study import (  # noqa: E402
    config,
    data,
    evaluation,
    metrics,
    models,
    utils,
)

__all__ = [
    "__version__",
    "config",
    "data",
    "evaluation",
    "metrics",
    "models",
    "utils",
]
