import logging

import numpy as np
import pytest

from alfrac.alfrac import (
    InferenceState,
    assignment_term,
    compute_evidence,
    compute_responsibilities,
    hard_assign,
    infer_evidence,
    infer_evidence_log,
    update_pseudo_counts,
)
from alfrac.config import VBConfig
from alfrac.dirichlet import log_normalizer
from alfrac.errors import ConfigurationError, InferenceCancelled, InvalidLikelihoodRow


def test_two_reads_two_alleles(two_reads):
    result = infer_evidence(two_reads, [1.0, 1.0])

    assert result.converged
    assert result.state == InferenceState.CONVERGED
    q = result.responsibilities
    assert q.shape == (2, 2)
    assert q[0, 0] > 0.5
    assert q[1, 1] > 0.5
    assert np.all((result.posterior_alphas > 1.0) & (result.posterior_alphas < 3.0))
    assert np.isfinite(result.evidence)


def test_two_reads_bound_below_exact_evidence(two_reads):
    # with a uniform prior on the fraction f of allele 0 the exact evidence is
    # E[(0.1 + 0.8 f)(0.8 - 0.6 f)] = 0.21
    result = infer_evidence(two_reads, [1.0, 1.0])
    assert result.evidence <= np.log(0.21)
    assert result.evidence > np.log(0.21) - 1.0


def test_sharp_prior_has_lower_evidence(two_reads):
    flat = infer_evidence(two_reads, [1.0, 1.0])
    sharp = infer_evidence(two_reads, [0.01, 0.01])
    assert np.isfinite(sharp.evidence)
    assert flat.evidence > sharp.evidence


def test_rows_sum_to_one_and_alphas_grow(simulate_small):
    likes, _ = simulate_small
    prior = np.array([0.5, 2.0])
    result = infer_evidence(likes, prior)

    assert np.allclose(result.responsibilities.sum(axis=1), 1.0, atol=1e-9)
    assert np.all(result.responsibilities >= 0)
    assert np.all(result.posterior_alphas > prior)
    assert result.posterior_alphas.sum() == pytest.approx(prior.sum() + likes.shape[0])


def test_recovers_allele_fractions(simulate_small):
    likes, origin = simulate_small
    result = infer_evidence(likes, [1.0, 1.0])
    fractions = result.posterior_alphas / result.posterior_alphas.sum()
    observed = np.bincount(origin, minlength=2) / origin.shape[0]
    assert fractions == pytest.approx(observed, abs=0.05)


def test_evidence_trace_is_monotone(simulate_small):
    likes, _ = simulate_small
    result = infer_evidence(likes, [1.0, 1.0], VBConfig(tolerance=1e-10, max_iter=500))

    trace = np.array(result.elbo_trace)
    assert trace.shape[0] == result.n_iterations + 1
    assert np.all(np.diff(trace) >= -1e-9 * np.abs(trace[:-1]).max())
    assert trace[-1] == result.evidence


def test_single_allele_closed_form():
    likes = np.array([[0.3], [1e-4], [2.0], [0.7]])
    prior = np.array([2.5])
    result = infer_evidence(likes, prior)

    n_reads = likes.shape[0]
    assert np.all(result.responsibilities == 1.0)
    assert result.posterior_alphas == pytest.approx(prior + n_reads)
    closed_form = log_normalizer(prior) - log_normalizer(prior + n_reads)
    assert closed_form == 0.0
    # only the likelihood of the data remains
    assert result.evidence == pytest.approx(closed_form + np.log(likes).sum(), abs=1e-12)


def test_single_allele_posterior_ignores_likelihood_values():
    a = infer_evidence([[0.3], [0.1]], [1.0])
    b = infer_evidence([[1e-20], [5.0]], [1.0])
    assert np.array_equal(a.posterior_alphas, b.posterior_alphas)
    assert np.array_equal(a.responsibilities, b.responsibilities)


def test_idempotent(simulate_small):
    likes, _ = simulate_small
    first = infer_evidence(likes, [1.0, 1.0])
    second = infer_evidence(likes, [1.0, 1.0])
    assert first.evidence == pytest.approx(second.evidence, rel=1e-12)
    np.testing.assert_allclose(first.posterior_alphas, second.posterior_alphas, rtol=1e-12)
    np.testing.assert_allclose(first.responsibilities, second.responsibilities, rtol=1e-12, atol=1e-15)


def test_extreme_likelihoods_are_stable():
    likes = np.array(
        [
            [1e-30, 1e5, 1e-25],
            [1e5, 1e-30, 1e-30],
            [1e-30, 1e-30, 1e-28],
            [0.0, 1e-30, 1e5],
        ]
    )
    result = infer_evidence(likes, [1.0, 1.0, 1.0])

    assert np.all(np.isfinite(result.responsibilities))
    assert np.isfinite(result.evidence)
    assert np.allclose(result.responsibilities.sum(axis=1), 1.0, atol=1e-9)
    assert result.responsibilities[3, 0] == 0.0


def test_log_space_entry_matches(two_reads):
    linear = infer_evidence(two_reads, [1.0, 1.0])
    logged = infer_evidence_log(np.log(two_reads), [1.0, 1.0])
    assert linear.evidence == pytest.approx(logged.evidence, rel=1e-12)


def test_uniform_init_reaches_same_fixed_point(two_reads):
    config = dict(tolerance=1e-12, max_iter=5000)
    hard = infer_evidence(two_reads, [1.0, 1.0], VBConfig(init="hard", **config))
    uniform = infer_evidence(two_reads, [1.0, 1.0], VBConfig(init="uniform", **config))
    np.testing.assert_allclose(hard.responsibilities, uniform.responsibilities, atol=1e-6)
    assert hard.evidence == pytest.approx(uniform.evidence, abs=1e-8)


def test_iteration_cap_is_not_fatal(two_reads, caplog):
    with caplog.at_level(logging.WARNING, logger="alfrac.alfrac"):
        result = infer_evidence(two_reads, [1.0, 1.0], VBConfig(max_iter=1))

    assert not result.converged
    assert result.state == InferenceState.MAX_ITERS_REACHED
    assert result.n_iterations == 1
    assert np.isfinite(result.evidence)
    assert "did not converge" in caplog.text


def test_cancellation(two_reads):
    with pytest.raises(InferenceCancelled):
        infer_evidence(two_reads, [1.0, 1.0], should_stop=lambda: True)


def test_zero_likelihood_row():
    with pytest.raises(InvalidLikelihoodRow) as excinfo:
        infer_evidence([[0.5, 0.1], [0.0, 0.0]], [1.0, 1.0])
    assert excinfo.value.read_idx == 1


@pytest.mark.parametrize("bad", [-0.1, np.nan, np.inf])
def test_malformed_likelihood(bad):
    with pytest.raises(InvalidLikelihoodRow) as excinfo:
        infer_evidence([[0.5, 0.1], [0.2, 0.3], [bad, 0.3]], [1.0, 1.0])
    assert excinfo.value.read_idx == 2


def test_empty_reads_rejected():
    with pytest.raises(ValueError):
        infer_evidence(np.zeros((0, 2)), [1.0, 1.0])


@pytest.mark.parametrize("prior", [[1.0, 0.0], [1.0, -2.0], [1.0], [1.0, np.nan]])
def test_bad_prior(two_reads, prior):
    with pytest.raises(ConfigurationError):
        infer_evidence(two_reads, prior)


def test_scalar_prior_is_broadcast(two_reads):
    a = infer_evidence(two_reads, 1.0)
    b = infer_evidence(two_reads, [1.0, 1.0])
    assert a.evidence == pytest.approx(b.evidence)


@pytest.mark.parametrize(
    "tie_break, expected",
    [
        (0, [[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]]),
        (1, [[0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]),
        (2, [[0.5, 0.5, 0.0], [0.0, 0.0, 1.0]]),
    ],
)
def test_hard_assign_tie_breaks(tie_break, expected):
    log_likes = np.log(np.array([[0.4, 0.4, 0.2], [0.1, 0.2, 0.7]]))
    np.testing.assert_array_equal(hard_assign(log_likes, tie_break), expected)


def test_e_step_with_flat_fractions_normalizes_likelihoods(two_reads):
    q = compute_responsibilities(np.log(two_reads), np.zeros(2))
    np.testing.assert_allclose(q, two_reads / two_reads.sum(axis=1, keepdims=True))


def test_e_step_weights_by_fractions():
    q = compute_responsibilities(np.zeros((1, 2)), np.log(np.array([0.25, 0.75])))
    np.testing.assert_allclose(q, [[0.25, 0.75]])


def test_m_step_rebuilds_from_prior():
    q = np.array([[0.2, 0.8], [1.0, 0.0], [0.5, 0.5]])
    beta = update_pseudo_counts(q, np.array([1.0, 3.0]))
    np.testing.assert_allclose(beta, [2.7, 4.3])


def test_zero_responsibilities_contribute_nothing():
    log_likes = np.array([[0.0, -np.inf]])
    q = np.array([[1.0, 0.0]])
    assert assignment_term(log_likes, q) == 0.0

    prior = np.array([1.0, 1.0])
    beta = update_pseudo_counts(q, prior)
    evidence = compute_evidence(log_likes, q, prior, beta)
    assert evidence == pytest.approx(log_normalizer(prior) - log_normalizer(beta))
