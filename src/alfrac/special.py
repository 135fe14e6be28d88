import numpy as np
from scipy import special

from .errors import DomainError


def _check_domain(x, name):
    arr = np.asarray(x, dtype=np.float64)
    # NaN fails the comparison as well
    if not np.all(arr > 0):
        bad = arr[~(arr > 0)].ravel()[0] if arr.ndim else arr
        raise DomainError(f"{name} is only defined for x > 0, got {float(bad)}")
    return arr


def digamma(x):
    """
    Digamma function, the derivative of log-gamma.

    Parameters
    ----------
    x : float or np.ndarray
        Strictly positive argument(s).

    Returns
    -------
    float or np.ndarray
        A Python float for scalar input, an array of the same shape otherwise.

    Raises
    ------
    DomainError
        If any argument is not strictly positive.
    """
    arr = _check_domain(x, "digamma")
    out = special.digamma(arr)
    return float(out) if out.ndim == 0 else out


def log_gamma(x):
    """
    Natural log of the gamma function.

    Uses ``scipy.special.gammaln``, so large arguments do not overflow.

    Parameters
    ----------
    x : float or np.ndarray
        Strictly positive argument(s).

    Returns
    -------
    float or np.ndarray
        A Python float for scalar input, an array of the same shape otherwise.

    Raises
    ------
    DomainError
        If any argument is not strictly positive.
    """
    arr = _check_domain(x, "log_gamma")
    out = special.gammaln(arr)
    return float(out) if out.ndim == 0 else out
