from dataclasses import dataclass, field
import numpy as np
from scipy.stats import beta as beta_dist

from .special import digamma, log_gamma


def _as_pseudo_counts(omega) -> np.ndarray:
    omega = np.asarray(omega, dtype=np.float64)
    if omega.ndim != 1 or omega.shape[0] == 0:
        raise ValueError(f"pseudo-counts must be a non-empty 1-D vector, got shape {omega.shape}")
    return omega


def log_normalizer(omega) -> float:
    """
    Log-normalizer g of the Dirichlet density with pseudo-counts omega.

    g(omega) = log_gamma(sum(omega)) - sum_a log_gamma(omega_a)

    Parameters
    ----------
    omega : array-like
        Strictly positive pseudo-counts.

    Returns
    -------
    float
        The log-normalizer. Zero for a single component.
    """
    omega = _as_pseudo_counts(omega)
    return log_gamma(omega.sum()) - float(np.sum(log_gamma(omega)))


def expected_log_fractions(omega) -> np.ndarray:
    """
    Expected log of each fraction under Dir(omega).

    h_a(omega) = digamma(omega_a) - digamma(sum(omega))

    Parameters
    ----------
    omega : array-like
        Strictly positive pseudo-counts.

    Returns
    -------
    np.ndarray
        Vector of expected log-fractions, same length as omega.
    """
    omega = _as_pseudo_counts(omega)
    return digamma(omega) - digamma(omega.sum())


@dataclass
class Dirichlet:
    """
    Summary of a Dirichlet distribution over allele fractions.

    Attributes
    ----------
    alphas : np.ndarray
        Pseudo-counts, one per allele.
    """

    alphas: np.ndarray
    _total: float = field(init=False, repr=False)

    def __post_init__(self):
        self.alphas = _as_pseudo_counts(self.alphas)
        self._total = float(self.alphas.sum())

    @property
    def mean(self) -> np.ndarray:
        return self.alphas / self._total

    @property
    def variance(self) -> np.ndarray:
        mean = self.mean
        return mean * (1.0 - mean) / (self._total + 1.0)

    @property
    def log_normalizer(self) -> float:
        return log_normalizer(self.alphas)

    @property
    def expected_log_fractions(self) -> np.ndarray:
        return expected_log_fractions(self.alphas)

    def credible_intervals(self, width=0.95):
        """
        Equal-tailed credible interval of each allele fraction.

        The marginal of component a is Beta(alpha_a, sum(alpha) - alpha_a).

        Parameters
        ----------
        width : float, optional
            Posterior mass inside the interval (default is ``0.95``).

        Returns
        -------
        tuple of np.ndarray
            (lower, upper) bounds per allele.
        """
        if not 0 < width < 1:
            raise ValueError(f"width must lie in (0, 1), got {width}")
        if self.alphas.shape[0] == 1:
            return np.ones(1), np.ones(1)
        tail = 0.5 * (1.0 - width)
        rest = self._total - self.alphas
        lower = beta_dist.ppf(tail, self.alphas, rest)
        upper = beta_dist.ppf(1.0 - tail, self.alphas, rest)
        return lower, upper
