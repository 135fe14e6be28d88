class AlfracError(Exception):
    """
    Base class for errors raised while scoring an allele subset.
    """


class DomainError(AlfracError, ValueError):
    """
    A special function was evaluated outside of its domain (x <= 0).
    """


class InvalidLikelihoodRow(AlfracError, ValueError):
    """
    A read has no positive likelihood under the allele subset, or a malformed
    (negative, NaN or infinite) likelihood.

    Attributes
    ----------
    read_idx : int
        Row index of the first offending read.
    """

    def __init__(self, read_idx, message=None):
        self.read_idx = read_idx
        if message is None:
            message = f"Read {read_idx} has no positive likelihood under the allele subset."
        super().__init__(message)


class ConfigurationError(AlfracError, ValueError):
    """
    Invalid inference settings or Dirichlet prior.
    """


class InferenceCancelled(AlfracError):
    """
    The caller requested cancellation between two outer iterations.
    """
