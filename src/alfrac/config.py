from dataclasses import dataclass
import numpy as np

from .errors import ConfigurationError


_DEFAULT_TOLERANCE = 1e-4
_DEFAULT_MAX_ITER = 100

INIT_POLICIES = ("hard", "uniform")
TIE_BREAKS = ("lowest", "highest", "split")


@dataclass
class VBConfig:
    """
    Settings for one run of mean-field variational inference.

    Attributes
    ----------
    tolerance : float
        Convergence threshold on the largest absolute change of any
        responsibility between two consecutive iterations.
    max_iter : int
        Cap on the number of outer (M-step, E-step) iterations.
    init : str
        ``"hard"`` assigns each read to its maximum-likelihood allele,
        ``"uniform"`` starts every read at 1/K.
    tie_break : str
        How hard initialization resolves tied maximal likelihoods:
        ``"lowest"`` or ``"highest"`` allele index, or ``"split"`` the mass
        evenly across the tied alleles.
    threads : int, optional
        Number of numba threads for the per-read kernels. ``None`` keeps the
        current numba setting.
    """

    tolerance: float = _DEFAULT_TOLERANCE
    max_iter: int = _DEFAULT_MAX_ITER
    init: str = "hard"
    tie_break: str = "lowest"
    threads: int = None

    def __post_init__(self):
        if not self.tolerance > 0:
            raise ConfigurationError(f"tolerance must be > 0, got {self.tolerance}")
        if (
            isinstance(self.max_iter, bool)
            or not np.isfinite(self.max_iter)
            or int(self.max_iter) != self.max_iter
        ):
            raise ConfigurationError(f"max_iter must be an integer, got {self.max_iter}")
        self.max_iter = int(self.max_iter)
        if self.max_iter <= 0:
            raise ConfigurationError(f"max_iter must be > 0, got {self.max_iter}")
        if self.init not in INIT_POLICIES:
            raise ConfigurationError(
                f"init must be one of {INIT_POLICIES}, got {self.init!r}"
            )
        if self.tie_break not in TIE_BREAKS:
            raise ConfigurationError(
                f"tie_break must be one of {TIE_BREAKS}, got {self.tie_break!r}"
            )
        if self.threads is not None and self.threads < 1:
            raise ConfigurationError(f"threads must be >= 1, got {self.threads}")

    @property
    def tie_break_code(self) -> int:
        """Integer code of the tie-break rule, as consumed by the numba kernels."""
        return TIE_BREAKS.index(self.tie_break)
