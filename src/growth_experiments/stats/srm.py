"""
Sample ratio mismatch (SRM) check on A/B assignment counts.

A split far from the configured allocation usually means broken bucketing
or lost assignment writes, so the results summary carries the flag.
"""

from typing import Tuple

from scipy import stats


def srm_chi_square(
    n_a: int,
    n_b: int,
    expected_frac_b: float = 0.5,
) -> Tuple[float, float]:
    """
    Goodness-of-fit of the observed (A, B) counts to the allocation.

    Returns:
        Tuple of (chi2_statistic, p_value); (0.0, 1.0) with no assignments
    """
    if not 0 < expected_frac_b < 1:
        raise ValueError(f"expected_frac_b must be in (0, 1), got {expected_frac_b}")
    n_total = n_a + n_b
    if n_total == 0:
        return 0.0, 1.0
    result = stats.chisquare(
        [n_a, n_b],
        f_exp=[n_total * (1 - expected_frac_b), n_total * expected_frac_b],
    )
    return float(result.statistic), float(result.pvalue)


def check_srm(
    n_a: int,
    n_b: int,
    expected_frac_b: float = 0.5,
    alpha: float = 0.01,
) -> Tuple[bool, float, float]:
    """Returns (srm_passed, chi2_statistic, p_value); passes when p >= alpha."""
    chi2, p_value = srm_chi_square(n_a, n_b, expected_frac_b)
    return p_value >= alpha, chi2, p_value
