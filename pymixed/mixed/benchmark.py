"""
Dimension and timing records for fitted models.

benchmark_fit() fits one model repeatedly, each time from scratch, and
reports its dimensions together with the evaluation count and median
wall-clock time. Records from several models are collected into a flat
table with records_to_frame() or written to disk with write_records().
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

import numpy as np
import pandas as pd

from pymixed._config import OptimizerSettings
from pymixed.core.compute.timing import timed
from pymixed.core.exceptions import ValidationError
from pymixed.mixed._common import DimensionRecord
from pymixed.mixed._contrasts import ContrastCoding
from pymixed.mixed.solvers import lmm

logger = logging.getLogger(__name__)

_COLUMNS = [
    'name', 'n_obs', 'p', 'n_theta', 'n_re', 'fevals',
    'fit_seconds', 'deviance', 'converged',
]


def benchmark_fit(
    formula: str,
    data: Any,
    *,
    contrasts: 'Mapping[str, str | ContrastCoding] | None' = None,
    n_reps: int = 3,
    name: str | None = None,
    reml: bool = False,
    optimizer: 'OptimizerSettings | str | None' = None,
) -> DimensionRecord:
    """Fit a model ``n_reps`` times and record its dimensions and cost.

    Every repetition rebuilds the model from the formula and data, so no
    factorization workspace is shared between repetitions.

    Args:
        formula: Model formula.
        data: Observation table.
        contrasts: Contrast codings, as for ``lmm``.
        n_reps: Number of fits to time.
        name: Label for the record. Default: the formula.
        reml: Passed to ``lmm``.
        optimizer: Passed to ``lmm``.

    Returns:
        DimensionRecord with the median fit time over the repetitions.
    """
    if n_reps < 1:
        raise ValidationError(f"n_reps must be >= 1, got {n_reps}")

    seconds = []
    fit = None
    for rep in range(n_reps):
        with timed() as timer:
            fit = lmm(formula, data, contrasts=contrasts, reml=reml, optimizer=optimizer)
        seconds.append(timer.result()['total_seconds'])
        logger.debug(
            "benchmark %r rep %d: %.4fs, %d fevals",
            name or formula, rep, seconds[-1], fit.fevals,
        )

    record = fit.dimension_record(name=name)
    return DimensionRecord(
        name=record.name,
        n_obs=record.n_obs,
        p=record.p,
        terms=record.terms,
        n_theta=record.n_theta,
        fevals=record.fevals,
        fit_seconds=float(np.median(seconds)),
        deviance=record.deviance,
        converged=record.converged,
    )


def records_to_frame(records: Iterable[DimensionRecord]) -> pd.DataFrame:
    """One row per record; random-effects terms become numbered columns.

    Term i (1-based) contributes ``term{i}_group``, ``term{i}_levels``
    and ``term{i}_q``. ``n_re`` is the total number of random effects,
    the sum of levels × q over the terms.
    """
    rows = []
    for rec in records:
        row = {
            'name': rec.name,
            'n_obs': rec.n_obs,
            'p': rec.p,
            'n_theta': rec.n_theta,
            'n_re': sum(t.n_levels * t.q for t in rec.terms),
            'fevals': rec.fevals,
            'fit_seconds': rec.fit_seconds,
            'deviance': rec.deviance,
            'converged': rec.converged,
        }
        for i, term in enumerate(rec.terms, start=1):
            row[f'term{i}_group'] = term.group
            row[f'term{i}_levels'] = term.n_levels
            row[f'term{i}_q'] = term.q
        rows.append(row)

    frame = pd.DataFrame(rows)
    if frame.empty:
        return pd.DataFrame(columns=_COLUMNS)
    return frame


def write_records(
    records: Iterable[DimensionRecord],
    path: 'str | Path',
    sep: str = ',',
) -> Path:
    """Write records as a delimited table with a header row.

    Returns:
        The path written.
    """
    path = Path(path)
    records_to_frame(records).to_csv(path, sep=sep, index=False)
    return path
