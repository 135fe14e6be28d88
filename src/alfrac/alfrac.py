import argparse
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

import numba
import numpy as np
import pandas as pd
from numba import njit, prange

from .config import INIT_POLICIES, TIE_BREAKS, VBConfig
from .dirichlet import expected_log_fractions, log_normalizer
from .errors import ConfigurationError, InferenceCancelled, InvalidLikelihoodRow
from .subsetfit import SubsetFit
from .utils import likelihood_matrix, read_likelihoods, read_subsets


logger = logging.getLogger(__name__)


def parse_arguments() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="alfrac: rank candidate allele subsets by variational Bayes model evidence."
    )
    parser.add_argument(
        "-L",
        "--likelihoods",
        required=True,
        help="Path to CSV file with columns 'read', 'allele' and 'likelihood' or 'log_likelihood'",
    )
    parser.add_argument(
        "-S",
        "--subsets",
        required=True,
        help="Path to file with one candidate allele subset per line.",
    )
    parser.add_argument(
        "--sep",
        required=False,
        type=str,
        default=",",
        help="allele delimiter in the subset file.",
    )
    parser.add_argument(
        "--prior",
        required=False,
        type=float,
        default=1.0,
        help="Dirichlet pseudo-count assigned to every allele",
    )
    parser.add_argument(
        "--tolerance",
        required=False,
        type=float,
        default=1e-4,
        help="convergence threshold on the change in responsibilities",
    )
    parser.add_argument(
        "--max-iter",
        required=False,
        type=int,
        default=100,
        help="max number of iterations",
    )
    parser.add_argument(
        "--init",
        required=False,
        choices=INIT_POLICIES,
        default="hard",
        help="initialization of the read responsibilities",
    )
    parser.add_argument(
        "--tie-break",
        required=False,
        choices=TIE_BREAKS,
        default="lowest",
        help="how hard initialization resolves tied maximum likelihoods",
    )
    parser.add_argument(
        "--time-budget",
        required=False,
        type=float,
        help="stop scoring subsets after this many seconds",
    )
    parser.add_argument(
        "--ranking",
        required=False,
        type=str,
        help="Path to where the subset ranking should be saved",
    )
    parser.add_argument(
        "--responsibilities",
        required=False,
        type=str,
        help="Path to where the per-read responsibilities of the best subset should be saved",
    )
    parser.add_argument(
        "--read-assign",
        required=False,
        type=str,
        help="Path to where the MAP read-to-allele labels should be saved",
    )
    parser.add_argument(
        "--fractions",
        required=False,
        type=str,
        help="Path to where the allele fraction posterior summary should be saved",
    )
    parser.add_argument(
        "--pickle",
        type=str,
        help="path to where all pickled subset fits should be saved.",
    )
    parser.add_argument(
        "-j",
        "--threads",
        required=False,
        default=None,
        type=int,
        help="Number of threads to use",
    )
    parser.add_argument(
        "-v", "--verbose", help="Print verbose output", action="store_true"
    )

    return parser.parse_args()


class InferenceState(str, Enum):
    INIT = "init"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERS_REACHED = "max_iters_reached"


@dataclass
class EvidenceResult:
    """
    Output of variational inference for one allele subset.

    Attributes
    ----------
    evidence : float
        Evidence lower bound of the allele subset.
    posterior_alphas : np.ndarray
        Pseudo-counts of the Dirichlet posterior over allele fractions.
    responsibilities : np.ndarray
        Soft read-to-allele assignments (n_reads x n_alleles), rows sum to one.
    converged : bool
        ``False`` if the iteration cap was reached first.
    n_iterations : int
        Number of outer iterations run.
    elbo_trace : list of float
        Evidence after every M-step; the last entry equals ``evidence``.
    state : InferenceState
        Terminal state of the run.
    """

    evidence: float
    posterior_alphas: np.ndarray
    responsibilities: np.ndarray
    converged: bool
    n_iterations: int = 0
    elbo_trace: list = field(default_factory=list)
    state: InferenceState = InferenceState.CONVERGED


@njit(parallel=True)
def hard_assign(log_likes, tie_break):
    """
    Assigns each read entirely to its maximum-likelihood allele.

    Parameters
    ----------
    log_likes : np.ndarray
        Log-likelihoods (n_reads x n_alleles); every row has a finite maximum.
    tie_break : int
        0 picks the lowest tied allele index, 1 the highest, 2 splits the
        mass evenly over the tied alleles.

    Returns
    -------
    np.ndarray
        Responsibilities with the mass of each row on its best allele(s).
    """
    n_reads, n_alleles = log_likes.shape
    q_hard = np.zeros((n_reads, n_alleles))
    for r in prange(n_reads):
        best = -np.inf
        for a in range(n_alleles):
            if log_likes[r, a] > best:
                best = log_likes[r, a]
        if tie_break == 2:
            n_tied = 0
            for a in range(n_alleles):
                if log_likes[r, a] == best:
                    n_tied += 1
            for a in range(n_alleles):
                if log_likes[r, a] == best:
                    q_hard[r, a] = 1.0 / n_tied
        elif tie_break == 1:
            for a in range(n_alleles - 1, -1, -1):
                if log_likes[r, a] == best:
                    q_hard[r, a] = 1.0
                    break
        else:
            for a in range(n_alleles):
                if log_likes[r, a] == best:
                    q_hard[r, a] = 1.0
                    break
    return q_hard


@njit(parallel=True)
def compute_responsibilities(log_likes, log_fractions):
    """
    E-step: computes q(z_r = a) for each read r and allele a.

    q(z_r = a) is proportional to exp(h_a) * l[r, a], normalized in log space.

    Parameters
    ----------
    log_likes : np.ndarray
        Log-likelihoods (n_reads x n_alleles).
    log_fractions : np.ndarray
        Expected log allele fractions h under the current Dirichlet posterior.

    Returns
    -------
    np.ndarray
        Responsibilities (n_reads x n_alleles), each row summing to one.
    """
    n_reads, n_alleles = log_likes.shape
    q_z = np.zeros((n_reads, n_alleles))

    for r in prange(n_reads):
        max_log = -np.inf
        for a in range(n_alleles):
            q_z[r, a] = log_fractions[a] + log_likes[r, a]
            if q_z[r, a] > max_log:
                max_log = q_z[r, a]
        total = 0.0
        for a in range(n_alleles):
            q_z[r, a] = np.exp(q_z[r, a] - max_log)
            total += q_z[r, a]
        for a in range(n_alleles):
            q_z[r, a] /= total

    return q_z


@njit(parallel=True)
def update_pseudo_counts(q_z, prior):
    """
    M-step: posterior pseudo-counts beta_a = alpha_a + sum_r q(z_r = a).

    Parameters
    ----------
    q_z : np.ndarray
        Responsibilities (n_reads x n_alleles).
    prior : np.ndarray
        Dirichlet prior pseudo-counts.

    Returns
    -------
    np.ndarray
        Posterior pseudo-counts, rebuilt from the prior on every call.
    """
    n_reads, n_alleles = q_z.shape
    beta = np.empty(n_alleles)
    for a in prange(n_alleles):
        acc = 0.0
        for r in range(n_reads):
            acc += q_z[r, a]
        beta[a] = prior[a] + acc
    return beta


@njit(parallel=True)
def assignment_term(log_likes, q_z):
    """
    Computes sum_r sum_a q(z_r = a) * (log l[r, a] - log q(z_r = a)).

    Zero responsibilities contribute nothing (x log x -> 0).

    Parameters
    ----------
    log_likes : np.ndarray
        Log-likelihoods (n_reads x n_alleles).
    q_z : np.ndarray
        Responsibilities (n_reads x n_alleles).

    Returns
    -------
    float
        Expected log-likelihood plus the entropy of the read assignments.
    """
    n_reads, n_alleles = q_z.shape
    total = 0.0
    for r in prange(n_reads):
        for a in range(n_alleles):
            q = q_z[r, a]
            if q > 0.0:
                total += q * (log_likes[r, a] - np.log(q))
    return total


def compute_evidence(log_likes, q_z, prior, beta):
    """
    Evidence lower bound of an allele subset.

    L = g(alpha) - g(beta) + sum_r sum_a q(z_r = a) * (log l[r, a] - log q(z_r = a))

    Valid when ``beta`` was derived from ``q_z`` and ``prior`` by the M-step.

    Parameters
    ----------
    log_likes : np.ndarray
        Log-likelihoods (n_reads x n_alleles).
    q_z : np.ndarray
        Responsibilities (n_reads x n_alleles).
    prior : np.ndarray
        Dirichlet prior pseudo-counts alpha.
    beta : np.ndarray
        Dirichlet posterior pseudo-counts.

    Returns
    -------
    float
        The evidence lower bound.
    """
    return (
        log_normalizer(prior)
        - log_normalizer(beta)
        + assignment_term(log_likes, q_z)
    )


def initialize_q_z(log_likes: np.ndarray, config: VBConfig) -> np.ndarray:
    """
    Initial responsibilities, either a hard assignment to each read's
    maximum-likelihood allele or uniform over alleles.
    """
    if config.init == "uniform":
        return np.full(log_likes.shape, 1.0 / log_likes.shape[1])
    return hard_assign(log_likes, config.tie_break_code)


def run_variational_inference(
    log_likes: np.ndarray,
    prior: np.ndarray,
    config: VBConfig,
    should_stop=None,
):
    """
    Runs coordinate ascent variational inference for the read assignments
    and the allele fractions.

    Parameters
    ----------
    log_likes : np.ndarray
        Validated log-likelihoods (n_reads x n_alleles).
    prior : np.ndarray
        Validated Dirichlet prior pseudo-counts.
    config : VBConfig
        Tolerance, iteration cap and initialization policy.
    should_stop : callable, optional
        Polled once per outer iteration; a true return value cancels the run.

    Returns
    -------
    tuple
        (evidence, beta, q_z, state, n_iterations, elbo_trace)

    Raises
    ------
    InferenceCancelled
        If ``should_stop`` requested cancellation.
    """
    q_z = initialize_q_z(log_likes, config)
    state = InferenceState.MAX_ITERS_REACHED
    elbo_trace = []
    n_iterations = 0

    for it in range(config.max_iter):
        if should_stop is not None and should_stop():
            raise InferenceCancelled(f"Inference cancelled after {it} iterations.")

        beta = update_pseudo_counts(q_z, prior)
        elbo_trace.append(compute_evidence(log_likes, q_z, prior, beta))

        q_z_new = compute_responsibilities(log_likes, expected_log_fractions(beta))
        delta = np.max(np.abs(q_z_new - q_z))
        q_z = q_z_new
        n_iterations = it + 1

        if delta < config.tolerance:
            state = InferenceState.CONVERGED
            break

    # keep beta consistent with the returned responsibilities
    beta = update_pseudo_counts(q_z, prior)
    evidence = compute_evidence(log_likes, q_z, prior, beta)
    elbo_trace.append(evidence)

    return evidence, beta, q_z, state, n_iterations, elbo_trace


def validate_prior(prior, n_alleles: int) -> np.ndarray:
    """
    Broadcasts a scalar prior to ``n_alleles`` components and checks that every
    pseudo-count is finite and positive.
    """
    prior = np.asarray(prior, dtype=np.float64)
    if prior.ndim == 0:
        prior = np.full(n_alleles, float(prior))
    if prior.shape != (n_alleles,):
        raise ConfigurationError(
            f"prior must have one pseudo-count per allele ({n_alleles}), got shape {prior.shape}"
        )
    if not np.all(np.isfinite(prior)) or not np.all(prior > 0):
        raise ConfigurationError(f"prior pseudo-counts must be positive, got {prior.tolist()}")
    return prior.copy()


def validate_log_likelihoods(log_likes) -> np.ndarray:
    """
    Checks the shape of a log-likelihood matrix and that every read has a
    positive (finite log) likelihood under at least one allele.
    """
    log_likes = np.ascontiguousarray(log_likes, dtype=np.float64)
    if log_likes.ndim != 2:
        raise ValueError(f"likelihoods must be a 2-D reads x alleles matrix, got {log_likes.ndim} dimensions")
    n_reads, n_alleles = log_likes.shape
    if n_alleles == 0:
        raise ValueError("The allele subset is empty.")
    if n_reads == 0:
        raise ValueError("No reads were supplied; an empty read set cannot be scored.")

    malformed = (np.isnan(log_likes) | (log_likes == np.inf)).any(axis=1)
    if malformed.any():
        r = int(np.flatnonzero(malformed)[0])
        raise InvalidLikelihoodRow(r, f"Read {r} has a NaN or infinite likelihood.")

    unsupported = ~(log_likes > -np.inf).any(axis=1)
    if unsupported.any():
        raise InvalidLikelihoodRow(int(np.flatnonzero(unsupported)[0]))

    return log_likes


def infer_evidence_log(
    log_likelihoods,
    prior,
    config: VBConfig = None,
    should_stop=None,
    verbose: bool = False,
) -> EvidenceResult:
    """
    Scores one allele subset given natural-log read likelihoods.

    Parameters
    ----------
    log_likelihoods : array-like
        ``log P(read r | allele a)`` (n_reads x n_alleles); ``-inf`` marks a
        zero likelihood.
    prior : float or array-like
        Dirichlet prior pseudo-counts, one per allele, or a single value
        shared by all alleles.
    config : VBConfig, optional
        Inference settings (default is ``VBConfig()``).
    should_stop : callable, optional
        Cooperative cancellation check, polled once per outer iteration.
    verbose : bool, optional
        If ``True``, log progress messages (default is ``False``).

    Returns
    -------
    EvidenceResult
        Evidence lower bound, Dirichlet posterior and responsibilities.

    Raises
    ------
    InvalidLikelihoodRow
        If a read has no positive likelihood, or a NaN/infinite one.
    ConfigurationError
        If the prior does not hold one positive pseudo-count per allele.
    InferenceCancelled
        If ``should_stop`` requested cancellation.
    """
    if config is None:
        config = VBConfig()

    log_likes = validate_log_likelihoods(log_likelihoods)
    n_reads, n_alleles = log_likes.shape
    prior = validate_prior(prior, n_alleles)

    if config.threads is not None:
        numba.set_num_threads(min(config.threads, numba.config.NUMBA_NUM_THREADS))

    if verbose:
        logger.info(f"Scoring {n_alleles} alleles against {n_reads} reads...")

    evidence, beta, q_z, state, n_iterations, elbo_trace = run_variational_inference(
        log_likes, prior, config, should_stop=should_stop
    )

    if state == InferenceState.MAX_ITERS_REACHED:
        logger.warning(
            f"Variational inference did not converge within {config.max_iter} iterations; "
            f"reporting a looser evidence bound."
        )
    elif verbose:
        logger.info(f"Converged after {n_iterations} iterations with evidence {evidence:.4f}")

    return EvidenceResult(
        evidence=evidence,
        posterior_alphas=beta,
        responsibilities=q_z,
        converged=state == InferenceState.CONVERGED,
        n_iterations=n_iterations,
        elbo_trace=elbo_trace,
        state=state,
    )


def infer_evidence(
    likelihoods,
    prior,
    config: VBConfig = None,
    should_stop=None,
    verbose: bool = False,
) -> EvidenceResult:
    """
    Scores one allele subset given non-negative read likelihoods.

    Computes the mean-field posterior over read assignments, the Dirichlet
    posterior over allele fractions and the evidence lower bound. The work is
    done in log space, see ``infer_evidence_log``.

    Parameters
    ----------
    likelihoods : array-like
        ``P(read r | allele a)`` (n_reads x n_alleles), non-negative, each row
        with at least one positive entry.
    prior : float or array-like
        Dirichlet prior pseudo-counts, one per allele, or a single shared value.
    config : VBConfig, optional
        Inference settings (default is ``VBConfig()``).
    should_stop : callable, optional
        Cooperative cancellation check, polled once per outer iteration.
    verbose : bool, optional
        If ``True``, log progress messages (default is ``False``).

    Returns
    -------
    EvidenceResult
        Evidence lower bound, Dirichlet posterior and responsibilities.

    Examples
    --------
    >>> result = infer_evidence([[0.9, 0.1], [0.2, 0.8]], [1.0, 1.0])
    >>> result.converged
    True
    """
    likelihoods = np.asarray(likelihoods, dtype=np.float64)
    if likelihoods.ndim == 2:
        negative = (np.isnan(likelihoods) | (likelihoods < 0)).any(axis=1)
        if negative.any():
            r = int(np.flatnonzero(negative)[0])
            raise InvalidLikelihoodRow(r, f"Read {r} has a negative or NaN likelihood.")
    with np.errstate(divide="ignore"):
        log_likes = np.log(likelihoods)
    return infer_evidence_log(
        log_likes, prior, config=config, should_stop=should_stop, verbose=verbose
    )


def subset_prior(prior, subset: list) -> np.ndarray:
    """
    Dirichlet prior for one subset from a scalar or an allele -> pseudo-count mapping.
    """
    if isinstance(prior, dict):
        missing = [a for a in subset if a not in prior]
        if missing:
            raise ConfigurationError(f"No prior pseudo-count for alleles {missing}")
        return np.array([prior[a] for a in subset], dtype=np.float64)
    return np.full(len(subset), float(prior))


def rank_subsets(
    likelihoods: pd.DataFrame,
    subsets: list,
    prior=1.0,
    config: VBConfig = None,
    log_scale: bool = True,
    time_budget: float = None,
    verbose: bool = False,
) -> tuple:
    """
    Rank candidate allele subsets by their evidence lower bound.

    Each subset is scored independently against the same reads with
    ``infer_evidence_log``.

    Parameters
    ----------
    likelihoods : pandas.DataFrame
        Reads x alleles table indexed by read, one column per allele, as
        returned by ``read_likelihoods``.
    subsets : list of list
        Candidate allele subsets; each is an ordered list of column labels.
    prior : float or dict, optional
        Dirichlet pseudo-count per allele, either shared or keyed by allele
        (default is ``1.0``).
    config : VBConfig, optional
        Inference settings (default is ``VBConfig()``).
    log_scale : bool, optional
        ``True`` if the table holds natural-log likelihoods (default), ``False``
        for plain likelihoods.
    time_budget : float, optional
        Seconds after which the remaining subsets are skipped. The subset
        being scored when the budget runs out is abandoned.
    verbose : bool, optional
        If ``True``, enable informative logging messages (default is ``False``).

    Returns
    -------
    evidences : dict[int, float]
        Mapping from subset index to its evidence lower bound.
    best_fit : SubsetFit or None
        ``SubsetFit`` of the top-ranked subset, ``None`` if nothing was scored.
    all_fits : dict[int, SubsetFit]
        Mapping from each scored subset index to its ``SubsetFit``.

    Raises
    ------
    ValueError
        If a subset is empty or lists an allele twice.
    KeyError
        If a subset names an allele missing from ``likelihoods``.
    InvalidLikelihoodRow
        If a read has no positive likelihood under one of the subsets.
    """
    if config is None:
        config = VBConfig()

    should_stop = None
    if time_budget is not None:
        deadline = time.monotonic() + time_budget

        def should_stop():
            return time.monotonic() > deadline

    read_to_idx = {read: idx for idx, read in enumerate(likelihoods.index)}

    if verbose:
        logger.info(f"Starting alfrac...")
        logger.info(f"Number of candidate subsets: {len(subsets)}")
        logger.info(f"Number of alleles: {likelihoods.shape[1]}")
        logger.info(f"Number of reads: {likelihoods.shape[0]}")

    best_evidence = -np.inf
    best_fit = None
    evidences = {}
    all_fits = {}

    for idx, subset in enumerate(subsets):
        subset = list(subset)
        if not subset:
            raise ValueError(f"Subset {idx} is empty.")
        if len(set(subset)) != len(subset):
            raise ValueError(f"Subset {idx} lists an allele more than once: {subset}")

        matrix = likelihood_matrix(likelihoods, subset)
        if not log_scale:
            with np.errstate(divide="ignore", invalid="ignore"):
                matrix = np.log(matrix)

        try:
            result = infer_evidence_log(
                matrix,
                subset_prior(prior, subset),
                config=config,
                should_stop=should_stop,
            )
        except InvalidLikelihoodRow as e:
            read = likelihoods.index[e.read_idx]
            reason = str(e).replace(f"Read {e.read_idx} ", f"Read {read} ", 1)
            raise InvalidLikelihoodRow(
                e.read_idx, f"{reason} (subset {idx} {subset})"
            ) from e
        except InferenceCancelled:
            logger.warning(
                f"Time budget exhausted; skipping subsets {idx} to {len(subsets) - 1}."
            )
            break

        fit = SubsetFit(
            subset,
            idx,
            result.evidence,
            result.posterior_alphas,
            result.responsibilities,
            result.converged,
            read_to_idx,
            subset_prior(prior, subset),
            result.n_iterations,
        )
        all_fits[idx] = fit
        evidences[idx] = result.evidence
        if verbose:
            logger.info(f"Subset {idx} fit with evidence: {result.evidence:.2f}")
        if result.evidence > best_evidence:
            best_fit = fit
            best_evidence = result.evidence

    if verbose:
        logger.info(f"Done scoring {len(all_fits)} of {len(subsets)} candidate subsets!")
    return evidences, best_fit, all_fits


def main():
    args = parse_arguments()

    logging.basicConfig(
        format="{asctime} - {levelname} - {message}",
        style="{",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=logging.INFO,
    )

    likelihoods = read_likelihoods(args.likelihoods)
    subsets = read_subsets(args.subsets, sep=args.sep)

    config = VBConfig(
        tolerance=args.tolerance,
        max_iter=args.max_iter,
        init=args.init,
        tie_break=args.tie_break,
        threads=args.threads,
    )

    evidences, best_fit, all_fits = rank_subsets(
        likelihoods,
        subsets,
        prior=args.prior,
        config=config,
        time_budget=args.time_budget,
        verbose=args.verbose,
    )

    if best_fit is None:
        raise SystemExit("No allele subset could be scored within the time budget.")

    ranking = pd.DataFrame(
        [
            {
                "subset_idx": idx,
                "alleles": args.sep.join(str(a) for a in fit.subset),
                "evidence": fit.evidence,
                "converged": fit.converged,
            }
            for idx, fit in all_fits.items()
        ]
    )
    ranking = ranking.sort_values(by="evidence", ascending=False)

    if args.ranking:
        ranking.to_csv(args.ranking, index=False)
    if args.responsibilities:
        best_fit.responsibilities_df().to_csv(args.responsibilities, index=False)
    if args.read_assign:
        best_fit.map_assign().to_csv(args.read_assign, index=False)
    if args.fractions:
        best_fit.allele_fractions().to_csv(args.fractions, index=False)

    if args.pickle:
        pd.to_pickle(all_fits, args.pickle)

    print("\n---------------------alfrac complete!---------------------\n")
    print(best_fit)
