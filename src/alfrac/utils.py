import numpy as np
import pandas as pd

from .errors import InvalidLikelihoodRow


def read_likelihoods(file_path) -> pd.DataFrame:
    """
    Reads per read/allele likelihoods from a long-format CSV file.

    Parameters
    ----------
    file_path : str
        Path to a CSV file with columns ``read``, ``allele`` and either
        ``likelihood`` or ``log_likelihood`` (natural log).

    Returns
    -------
    pandas.DataFrame
        Reads x alleles table of natural-log likelihoods, indexed by read in
        order of first appearance. Read/allele pairs missing from the file
        have a likelihood of zero (``-inf``).

    Raises
    ------
    ValueError
        If required columns are missing or a read/allele pair is listed twice.
    InvalidLikelihoodRow
        If a listed likelihood is negative, empty, NaN or infinite.
    """
    df = pd.read_csv(file_path, dtype={"read": str, "allele": str})
    for col in ("read", "allele"):
        if col not in df.columns:
            raise ValueError(f"Likelihood file is missing column '{col}'")

    if "log_likelihood" in df.columns:
        values = df["log_likelihood"].astype(float)
    elif "likelihood" in df.columns:
        with np.errstate(divide="ignore", invalid="ignore"):
            values = np.log(df["likelihood"].astype(float))
    else:
        raise ValueError("Likelihood file needs a 'likelihood' or 'log_likelihood' column")

    df = df.assign(value=values)
    if df.duplicated(subset=["read", "allele"]).any():
        raise ValueError("Each read/allele pair may only be listed once.")

    reads = df["read"].unique()
    alleles = df["allele"].unique()

    # negative likelihoods turn into NaN under the log, empty cells are NaN
    malformed = df["value"].isna() | (df["value"] == np.inf)
    if malformed.any():
        read = df.loc[malformed, "read"].iloc[0]
        raise InvalidLikelihoodRow(
            int(np.flatnonzero(reads == read)[0]),
            f"Read {read} has a negative, missing or infinite likelihood.",
        )

    table = df.pivot(index="read", columns="allele", values="value")
    # pairs absent from the file have zero likelihood
    table = table.reindex(index=reads, columns=alleles).fillna(-np.inf)
    table.columns.name = None
    return table


def read_subsets(file_path, sep=","):
    """
    Reads candidate allele subsets, one subset per line.

    Parameters
    ----------
    file_path : str
        The path to the subset file.
    sep : str, optional
        The delimiter between alleles on a line (default is ``","``).

    Returns
    -------
    list of list of str
        The allele labels of each subset, in file order.

    Notes
    -----
    - Empty lines and lines starting with ``#`` are skipped.

    Examples
    --------
    Given a file `path/to/file` with the following content:

    ```
    # single allele
    A
    A,T
    ```

    >>> read_subsets("path/to/file")
    [['A'], ['A', 'T']]
    """
    subsets = []
    with open(file_path, "r") as file:
        for line in file:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            subsets.append([a.strip() for a in line.split(sep) if a.strip()])
    return subsets


def likelihood_matrix(table: pd.DataFrame, subset: list) -> np.ndarray:
    """
    Extracts the likelihood columns of an allele subset in subset order.

    Raises
    ------
    KeyError
        If an allele of the subset has no column in ``table``.
    """
    missing = [a for a in subset if a not in table.columns]
    if missing:
        raise KeyError(f"Alleles {missing} not found in likelihood table")
    return table.loc[:, list(subset)].to_numpy(dtype=np.float64)
