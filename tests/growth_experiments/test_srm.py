"""Tests for SRM chi-square."""
import pytest

from src.growth_experiments.stats.srm import srm_chi_square, check_srm


def test_srm_perfect_balance():
    """500/500 should pass SRM."""
    passed, _, p = check_srm(500, 500, expected_frac_b=0.5)
    assert passed
    assert p > 0.9


def test_srm_extreme_imbalance():
    """900/100 should fail SRM."""
    passed, _, p = check_srm(900, 100, expected_frac_b=0.5)
    assert not passed
    assert p < 0.01


def test_srm_chi_square_output():
    """Chi-square returns (stat, pvalue)."""
    chi2, p = srm_chi_square(50, 50)
    assert chi2 >= 0
    assert 0 <= p <= 1


def test_srm_empty():
    assert srm_chi_square(0, 0) == (0.0, 1.0)


def test_srm_matches_uneven_allocation():
    """A 30/70 split passes against a 0.7 allocation and fails against 0.5."""
    assert check_srm(300, 700, expected_frac_b=0.7)[0]
    assert not check_srm(300, 700, expected_frac_b=0.5)[0]


def test_srm_rejects_degenerate_allocation():
    with pytest.raises(ValueError):
        srm_chi_square(10, 10, expected_frac_b=1.0)
