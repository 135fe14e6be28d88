from dataclasses import dataclass
import pandas as pd
import numpy as np

from .dirichlet import Dirichlet


@dataclass
class SubsetFit:
    """
    Solution class to hold the fit of one candidate allele subset

    Attributes
    -----------
    subset : list
        Ordered allele labels of the subset.
    subset_idx : int
        Index identifier of the subset in the original input
    evidence : float
        The evidence lower bound (ELBO) computed for the subset.
    posterior_alphas : numpy.ndarray
        Dirichlet posterior pseudo-counts over the allele fractions.
    responsibilities : numpy.ndarray
        The inferred approximation to the posterior read-to-allele label.
    converged : bool
        Whether inference converged before the iteration cap.
    read_to_idx : dict
        The internal mapping of read label to index.
    prior : numpy.ndarray
        Dirichlet prior pseudo-counts used for the fit.
    n_iterations : int
        Number of outer iterations run.

    """

    subset: list
    subset_idx: int
    evidence: float
    posterior_alphas: np.ndarray
    responsibilities: np.ndarray
    converged: bool
    read_to_idx: dict
    prior: np.ndarray = None
    n_iterations: int = 0

    def __post_init__(self):
        self.allele_to_idx = {a: i for i, a in enumerate(self.subset)}
        self.idx_to_allele = dict(enumerate(self.subset))
        self.posterior = Dirichlet(self.posterior_alphas)

    def __str__(self):
        mystr = f"Subset {self.subset_idx}\nEvidence: {self.evidence:.2f}\n"
        if not self.converged:
            mystr += "(not converged)\n"
        for allele, alpha, mean in zip(self.subset, self.posterior_alphas, self.posterior.mean):
            mystr += f" {allele}: alpha={alpha:.2f} fraction={mean:.3f}\n"
        return mystr

    def __repr__(self):
        return f"SubsetFit(subset={self.subset}, subset_idx={self.subset_idx}, evidence={self.evidence})"

    def _label_rows(self, df):
        """
        replaces the integer read index of a dataframe with read labels
        """
        df.index.name = "id"
        df.reset_index(inplace=True)
        label_dict = {val: key for key, val in self.read_to_idx.items()}
        df["id"] = df["id"].map(label_dict)
        return df

    def responsibilities_df(self):
        """
        Converts the responsibilities array to pandas.DataFrame

        Returns
        -------
        pandas.DataFrame
            A dataframe containing the inferred read-to-allele posterior distribution.

        """
        df = pd.DataFrame(self.responsibilities)
        df.columns = [f"allele_{self.idx_to_allele[i]}" for i in range(self.responsibilities.shape[1])]
        return self._label_rows(df)

    def map_assign(self):
        """
        Assigns each read to the maximum a posteriori (MAP) allele

        Returns
        -------
        pandas.DataFrame
            A dataframe with columns ['id', 'assignment'] providing the read-to-allele MAP assignment.

        """
        q_assign = self.responsibilities.argmax(axis=1)
        df = pd.DataFrame([self.idx_to_allele[val] for val in q_assign], columns=["assignment"])
        return self._label_rows(df)

    def allele_fractions(self, width=0.95):
        """
        Summarizes the Dirichlet posterior over allele fractions.

        Parameters
        ----------
        width : float
            Posterior mass of the equal-tailed credible interval (default is 0.95).

        Returns
        -------
        pandas.DataFrame
            A dataframe with columns ['allele', 'alpha', 'mean', 'variance', 'lower', 'upper'].
        """
        lower, upper = self.posterior.credible_intervals(width)
        return pd.DataFrame(
            {
                "allele": self.subset,
                "alpha": self.posterior_alphas,
                "mean": self.posterior.mean,
                "variance": self.posterior.variance,
                "lower": lower,
                "upper": upper,
            }
        )

    def read_entropy(self):
        """
        Computes the entropy of each read assignment from the responsibilities

        Returns
        -------
        pandas.DataFrame
            A dataframe with columns ['id', 'entropy'] containing the
            entropy of the inferred posterior distribution for each read.

        """
        q = self.responsibilities
        with np.errstate(divide="ignore", invalid="ignore"):
            terms = np.where(q > 0, q * np.log(q), 0.0)
        df = pd.DataFrame(-terms.sum(axis=1), columns=["entropy"])
        return self._label_rows(df)
