"""
Design construction and validation for linear mixed models.

MixedDesign turns an observation table, a formula and contrast codings
into the numeric pieces the fitting code works with: the response y,
the fixed-effects matrix X, and one ReTerm (with its sparse Z_i) per
random-effects term.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Mapping

import numpy as np
import pandas as pd
import scipy.linalg as sla
from numpy.typing import NDArray

from pymixed.core.exceptions import FormulaError, ValidationError, RankDeficiencyWarning
from pymixed.core.validation import (
    check_1d, check_array, check_consistent_length, check_finite, check_min_samples,
)
from pymixed.mixed._contrasts import (
    ContrastCoding, resolve_coding, encode_factor, interaction_columns,
)
from pymixed.mixed._formula import ParsedFormula, parse_formula
from pymixed.mixed._random_effects import ReTerm, build_reterm

logger = logging.getLogger(__name__)

# Relative tolerance on |diag(R)| when testing a column of X for aliasing
RANK_TOL = 1e-8


@dataclass(frozen=True)
class MixedDesign:
    """Validated design for a linear mixed model.

    Attributes:
        formula: Parsed model formula.
        y: Response vector (n,).
        X: Fixed effects design matrix (n, p), aliased columns removed.
        coefficient_names: Names of the columns of X.
        reterms: Random-effects terms, sorted by number of levels
            (descending).
        contrasts: Contrast coding used for each categorical variable.
        dropped_columns: Names of fixed-effect columns removed because
            they were linearly dependent on earlier columns.
        n: Number of observations.
        p: Number of fixed effect columns.
    """
    formula: ParsedFormula
    y: NDArray
    X: NDArray
    coefficient_names: tuple[str, ...]
    reterms: tuple[ReTerm, ...]
    contrasts: dict[str, ContrastCoding]
    dropped_columns: tuple[str, ...]
    n: int
    p: int

    @property
    def theta_size(self) -> int:
        return sum(t.theta_size for t in self.reterms)

    @staticmethod
    def build(
        formula: 'str | ParsedFormula',
        data: 'pd.DataFrame | Mapping[str, Any]',
        contrasts: 'Mapping[str, str | ContrastCoding] | None' = None,
    ) -> 'MixedDesign':
        """Validate inputs and create a MixedDesign.

        Args:
            formula: Formula string or an already parsed formula.
            data: Observation table, a DataFrame or a mapping of column
                name to 1D array.
            contrasts: Mapping of column name to contrast scheme name or
                ContrastCoding. Columns listed here are categorical even
                if numeric.

        Returns:
            Validated MixedDesign.

        Raises:
            FormulaError: On malformed formulas or unknown columns.
            ValidationError: On invalid data.
        """
        parsed = formula if isinstance(formula, ParsedFormula) else parse_formula(formula)
        table = data if isinstance(data, pd.DataFrame) else _table_from_mapping(data)
        contrasts = dict(contrasts or {})

        missing = sorted(parsed.variables() - set(table.columns))
        if missing:
            raise FormulaError(
                f"Formula refers to columns {missing} not in the data. "
                f"Available: {list(table.columns)}",
                formula=parsed.formula,
                term=missing[0],
            )
        unknown = sorted(set(contrasts) - set(table.columns))
        if unknown:
            raise ValidationError(
                f"Contrasts given for columns {unknown} not in the data"
            )
        if not parsed.random_terms:
            raise FormulaError(
                f"Formula {parsed.formula!r} has no random-effects terms",
                formula=parsed.formula,
            )

        n = len(table)
        y = check_array(table[parsed.response].to_numpy(), parsed.response)
        check_min_samples(y, 3, parsed.response)
        check_finite(y, parsed.response)

        encoder = _ColumnEncoder(table, contrasts)

        X, names = _fixed_effects_matrix(parsed, encoder, n)
        X, names, dropped = _drop_aliased_columns(X, names)

        reterms = [
            _build_reterm(rt, table, encoder, n) for rt in parsed.random_terms
        ]
        # More levels first; fill-in in the blocked factor depends on this order
        reterms.sort(key=lambda t: -t.n_levels)

        logger.debug(
            "built design: n=%d p=%d terms=%s",
            n, X.shape[1],
            [(t.group_name, t.n_levels, t.q) for t in reterms],
        )

        return MixedDesign(
            formula=parsed,
            y=y,
            X=X,
            coefficient_names=tuple(names),
            reterms=tuple(reterms),
            contrasts=encoder.used,
            dropped_columns=tuple(dropped),
            n=n,
            p=X.shape[1],
        )


class _ColumnEncoder:
    """Encodes table columns to numeric blocks, caching per column."""

    def __init__(self, table: pd.DataFrame, contrasts: dict):
        self.table = table
        self.contrasts = contrasts
        self.used: dict[str, ContrastCoding] = {}
        self._cache: dict[str, tuple[NDArray, list[str]]] = {}

    def is_categorical(self, name: str) -> bool:
        if name in self.contrasts:
            return True
        col = self.table[name]
        return not pd.api.types.is_numeric_dtype(col) or pd.api.types.is_bool_dtype(col)

    def encode(self, name: str) -> tuple[NDArray, list[str]]:
        if name in self._cache:
            return self._cache[name]

        col = self.table[name]
        if col.isna().any():
            raise ValidationError(
                f"{name}: contains {int(col.isna().sum())} missing values"
            )

        if self.is_categorical(name):
            coding = resolve_coding(self.contrasts.get(name))
            if coding.levels is None and isinstance(col.dtype, pd.CategoricalDtype):
                coding = ContrastCoding(
                    scheme=coding.scheme,
                    levels=tuple(col.cat.categories),
                    base=coding.base,
                )
            block, labels = encode_factor(col.to_numpy(), coding, name)
            self.used[name] = coding
        else:
            values = check_array(col.to_numpy(), name)
            check_finite(values, name)
            block, labels = values.reshape(-1, 1), [name]

        self._cache[name] = (block, labels)
        return block, labels

    def term(self, term: tuple[str, ...]) -> tuple[NDArray, list[str]]:
        """Columns for a main effect or interaction term."""
        block, labels = self.encode(term[0])
        for name in term[1:]:
            other, other_labels = self.encode(name)
            block = interaction_columns(block, other)
            labels = [f"{a} & {b}" for a in labels for b in other_labels]
        return block, labels


def _fixed_effects_matrix(
    parsed: ParsedFormula,
    encoder: _ColumnEncoder,
    n: int,
) -> tuple[NDArray, list[str]]:
    blocks: list[NDArray] = []
    names: list[str] = []
    if parsed.intercept:
        blocks.append(np.ones((n, 1), dtype=np.float64))
        names.append('(Intercept)')
    for term in parsed.fixed_terms:
        block, labels = encoder.term(term)
        blocks.append(block)
        names.extend(labels)

    if not blocks:
        raise FormulaError(
            f"Formula {parsed.formula!r} has no fixed-effect columns",
            formula=parsed.formula,
        )
    return np.hstack(blocks), names


def _drop_aliased_columns(
    X: NDArray,
    names: list[str],
) -> tuple[NDArray, list[str], list[str]]:
    """Remove columns of X that are linear combinations of earlier ones.

    Columns are tried left to right; a column is kept when the last
    diagonal of the R factor of the kept set plus that column is not
    negligible relative to the column norm. Rank deficiency is a warning,
    not an error, as long as at least one column is identifiable.
    """
    keep: list[int] = []
    for j in range(X.shape[1]):
        norm = np.linalg.norm(X[:, j])
        if norm == 0.0:
            continue
        R = sla.qr(X[:, keep + [j]], mode='r')[0]
        if abs(R[len(keep), len(keep)]) > RANK_TOL * norm:
            keep.append(j)

    if not keep:
        raise ValidationError(
            "Fixed-effects design matrix has rank 0; no coefficient is identifiable"
        )
    if len(keep) == X.shape[1]:
        return X, names, []

    dropped = [names[j] for j in range(X.shape[1]) if j not in keep]
    warnings.warn(
        f"Fixed-effects matrix is rank deficient (rank {len(keep)} < {X.shape[1]} "
        f"columns); dropping aliased columns {dropped}",
        RankDeficiencyWarning,
        stacklevel=4,
    )
    return X[:, keep], [names[j] for j in keep], dropped


def _build_reterm(rt, table: pd.DataFrame, encoder: _ColumnEncoder, n: int) -> ReTerm:
    cols = rt.group_columns
    for name in cols:
        if table[name].isna().any():
            raise ValidationError(f"{name}: grouping factor contains missing values")

    declared = None
    if len(cols) == 1:
        group_values = table[cols[0]].to_numpy()
        if isinstance(table[cols[0]].dtype, pd.CategoricalDtype):
            declared = list(table[cols[0]].cat.categories)
    else:
        group_values = table[list(cols)].astype(str).agg(':'.join, axis=1).to_numpy()

    blocks: list[NDArray] = []
    cnames: list[str] = []
    if rt.intercept:
        blocks.append(np.ones((n, 1), dtype=np.float64))
        cnames.append('(Intercept)')
    for term in rt.terms:
        block, labels = encoder.term(term)
        blocks.append(block)
        cnames.extend(labels)

    return build_reterm(
        rt.group,
        group_values,
        cnames,
        np.hstack(blocks),
        correlated=rt.correlated,
        declared_levels=declared,
    )


def _table_from_mapping(data: Mapping[str, Any]) -> pd.DataFrame:
    columns = {name: np.asarray(values) for name, values in dict(data).items()}
    for name, values in columns.items():
        check_1d(values, name)
    check_consistent_length(*columns.values(), names=tuple(columns))
    return pd.DataFrame(columns)
