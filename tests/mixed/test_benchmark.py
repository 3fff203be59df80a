"""Tests for dimension records and the benchmark harness."""

from contextlib import contextmanager

import pandas as pd
import pytest

from pymixed.core.exceptions import ValidationError
from pymixed.mixed import (
    DimensionRecord, TermDimension, benchmark_fit, lmm, records_to_frame, write_records,
)
from pymixed.mixed import benchmark


def _record(name, terms, **kw):
    fields = dict(
        name=name, n_obs=100, p=2, terms=tuple(terms), n_theta=len(terms),
        fevals=40, fit_seconds=0.01, deviance=321.5, converged=True,
    )
    fields.update(kw)
    return DimensionRecord(**fields)


class TestBenchmarkFit:
    """Repeated fits summarized as one record."""

    def test_record_matches_fit(self, crossed_effects):
        """The record mirrors a single fit of the same model."""
        formula = "y ~ 1 + x + (1 | subject) + (1 | item)"
        rec = benchmark_fit(formula, crossed_effects, n_reps=2)
        fit = lmm(formula, crossed_effects)
        assert rec.name == formula
        assert rec.n_obs == 300
        assert rec.p == 2
        assert rec.n_theta == 2
        assert rec.fevals == fit.fevals
        assert rec.deviance == fit.deviance
        assert rec.converged
        assert rec.fit_seconds > 0.0

    def test_named_record(self, kb07_like, kb07_contrasts):
        """A name overrides the formula as label."""
        rec = benchmark_fit("rt ~ 1 + prec + (1 | subj)", kb07_like,
                            contrasts=kb07_contrasts, n_reps=1, name='kb07_min')
        assert rec.name == 'kb07_min'
        assert rec.terms == (TermDimension('subj', 24, 1),)

    def test_median_of_timed_reps(self, crossed_effects, monkeypatch):
        """fit_seconds is the median of the per-repetition wall-clock times."""
        times = iter([0.3, 0.1, 0.2])

        class _FixedTimer:
            def __init__(self):
                self.seconds = next(times)

            def result(self):
                return {'total_seconds': self.seconds}

        @contextmanager
        def fixed_timed():
            yield _FixedTimer()

        monkeypatch.setattr(benchmark, 'timed', fixed_timed)
        rec = benchmark_fit("y ~ 1 + x + (1 | subject)", crossed_effects, n_reps=3)
        assert rec.fit_seconds == 0.2

    def test_n_reps_validated(self, crossed_effects):
        """At least one repetition is required."""
        with pytest.raises(ValidationError, match="n_reps"):
            benchmark_fit("y ~ 1 + x + (1 | subject)", crossed_effects, n_reps=0)


class TestRecordsToFrame:
    """Flattening records into a table."""

    def test_columns(self):
        """Terms become numbered columns; shorter records leave gaps."""
        records = [
            _record('a', [TermDimension('subj', 24, 2), TermDimension('item', 8, 1)], n_theta=4),
            _record('b', [TermDimension('subj', 24, 1)]),
        ]
        frame = records_to_frame(records)
        assert list(frame['name']) == ['a', 'b']
        assert list(frame['n_re']) == [56, 24]
        assert frame.loc[0, 'term2_group'] == 'item'
        assert frame.loc[0, 'term1_q'] == 2
        assert pd.isna(frame.loc[1, 'term2_group'])
        assert frame.columns[0] == 'name'

    def test_empty(self):
        """No records give an empty frame with the standard columns."""
        frame = records_to_frame([])
        assert frame.empty
        assert 'fevals' in frame.columns


class TestWriteRecords:
    """Writing records to disk."""

    def test_csv(self, tmp_path):
        """Records round-trip through a CSV file."""
        records = [_record('a', [TermDimension('g', 10, 1)])]
        path = write_records(records, tmp_path / "dims.csv")
        back = pd.read_csv(path)
        assert back.loc[0, 'name'] == 'a'
        assert back.loc[0, 'term1_levels'] == 10
        assert back.loc[0, 'fevals'] == 40

    def test_tab_separated(self, tmp_path):
        """A tab separator is honored."""
        records = [_record('a', [TermDimension('g', 10, 1)])]
        path = write_records(records, str(tmp_path / "dims.tsv"), sep='\t')
        header = path.read_text().splitlines()[0]
        assert header.split('\t')[:3] == ['name', 'n_obs', 'p']
