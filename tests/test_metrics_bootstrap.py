"""
Tests for the stratified bootstrap.
"""

import numpy as np
import pytest
from sklearn.metrics import roc_auc_score

from rcri_study.metrics.bootstrap import stratified_bootstrap_ci


@pytest.fixture
def scored():
    rng = np.random.default_rng(11)
    y = np.array([0] * 60 + [1] * 15)
    p = np.concatenate([rng.uniform(0, 0.6, 60), rng.uniform(0.3, 1.0, 15)])
    return y, p


def test_interval_is_ordered_and_bounded(scored):
    y, p = scored
    lower, upper = stratified_bootstrap_ci(y, p, roc_auc_score, n_boot=300, seed=0)
    assert 0 <= lower <= roc_auc_score(y, p) <= upper <= 1


def test_reproducible_with_seed(scored):
    y, p = scored
    first = stratified_bootstrap_ci(y, p, roc_auc_score, n_boot=100, seed=5)
    second = stratified_bootstrap_ci(y, p, roc_auc_score, n_boot=100, seed=5)
    assert first == second


def test_length_mismatch():
    with pytest.raises(ValueError, match="Length mismatch"):
        stratified_bootstrap_ci(np.array([0, 1]), np.array([0.1]), roc_auc_score)


def test_too_few_cases():
    y = np.array([0, 0, 0, 1])
    with pytest.raises(ValueError, match="Insufficient"):
        stratified_bootstrap_ci(y, np.linspace(0, 1, 4), roc_auc_score)


def test_too_few_valid_replicates_gives_nan(scored):
    y, p = scored

    def always_fails(y_true, y_pred):
        raise ValueError("undefined")

    lower, upper = stratified_bootstrap_ci(y, p, always_fails, n_boot=50)
    assert np.isnan(lower) and np.isnan(upper)
