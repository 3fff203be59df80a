"""
Shared fixtures for mixed model tests.

Provides observation tables with known structure: a balanced
psycholinguistics-style design with crossed subjects and items, a
longitudinal random-slope design, and crossed and nested random
intercept designs.
"""

import numpy as np
import pandas as pd
import pytest


@pytest.fixture
def rng():
    """Seeded random number generator for reproducible tests."""
    return np.random.default_rng(2024)


def _kb07_table(rng):
    """Balanced crossed design: rt ~ spkr * prec * load + (… | subj) + (… | item).

    24 subjects × 8 items = 192 trials. spkr and prec vary between items,
    load varies within subject and within item, every factor has two
    levels and every cell of the design is equally filled.
    """
    n_subj = 24
    n_item = 8

    subj = np.repeat(np.arange(n_subj), n_item)
    item = np.tile(np.arange(n_item), n_subj)

    spkr = np.where(item % 2 == 0, 'old', 'new')
    prec = np.where((item // 2) % 2 == 0, 'break', 'maintain')
    load = np.where((subj + item // 4) % 2 == 0, 'yes', 'no')

    subj_effects = rng.normal(0, 120.0, size=n_subj)
    item_effects = rng.normal(0, 80.0, size=n_item)
    item_prec = rng.normal(0, 40.0, size=n_item)

    s = np.where(spkr == 'new', 1.0, -1.0)
    p = np.where(prec == 'maintain', 1.0, -1.0)
    l = np.where(load == 'yes', 1.0, -1.0)

    rt = (2000.0 + 30.0 * s + 60.0 * p + 20.0 * l
          + subj_effects[subj]
          + item_effects[item] + item_prec[item] * p
          + rng.normal(0, 150.0, size=n_subj * n_item))

    return pd.DataFrame({
        'subj': [f"S{i:02d}" for i in subj],
        'item': [f"I{i:02d}" for i in item],
        'spkr': spkr,
        'prec': prec,
        'load': load,
        'rt': rt,
    })


@pytest.fixture
def kb07_like(rng):
    """kb07-like table drawn from the shared seeded generator."""
    return _kb07_table(rng)


@pytest.fixture
def make_kb07_like():
    """Factory for kb07-like tables with the same layout and a given seed."""
    return lambda seed: _kb07_table(np.random.default_rng(seed))


@pytest.fixture
def kb07_contrasts():
    """Helmert (±1) coding for every kb07 factor."""
    return {'spkr': 'helmert', 'prec': 'helmert', 'load': 'helmert'}


@pytest.fixture
def sleepstudy_like(rng):
    """Sleepstudy-like table: reaction ~ days + (1 + days | subject).

    18 subjects, 10 days each = 180 observations.
    """
    n_subjects = 18
    n_days = 10

    cov_matrix = np.array([
        [25.0 ** 2, 0.07 * 25.0 * 6.0],
        [0.07 * 25.0 * 6.0, 6.0 ** 2],
    ])
    re = rng.multivariate_normal([0, 0], cov_matrix, size=n_subjects)

    subject = np.repeat(np.arange(n_subjects), n_days)
    days = np.tile(np.arange(n_days, dtype=float), n_subjects)
    reaction = (250.0 + re[subject, 0]
                + (10.0 + re[subject, 1]) * days
                + rng.normal(0, 25.0, size=n_subjects * n_days))

    return pd.DataFrame({
        'subject': [f"s{i}" for i in subject],
        'days': days,
        'reaction': reaction,
    })


@pytest.fixture
def crossed_effects(rng):
    """Crossed random intercepts: y ~ x + (1 | subject) + (1 | item).

    30 subjects × 10 items = 300 observations.
    """
    n_subjects = 30
    n_items = 10

    subject_effects = rng.normal(0, 2.0, size=n_subjects)
    item_effects = rng.normal(0, 1.5, size=n_items)

    subject = np.repeat(np.arange(n_subjects), n_items)
    item = np.tile(np.arange(n_items), n_subjects)
    x = rng.normal(0, 1, size=n_subjects * n_items)

    y = (3.0 + 1.5 * x
         + subject_effects[subject]
         + item_effects[item]
         + rng.normal(0, 1.0, size=n_subjects * n_items))

    return pd.DataFrame({
        'subject': subject.astype(str),
        'item': item.astype(str),
        'x': x,
        'y': y,
    })


@pytest.fixture
def nested_effects(rng):
    """Nested random intercepts: y ~ x + (1 | classroom/student).

    5 classrooms × 6 students × 4 observations = 120 observations.
    Student labels repeat across classrooms, so the student term has to
    be the classroom:student interaction.
    """
    n_classrooms = 5
    n_students_per = 6
    n_obs_per = 4
    n_students = n_classrooms * n_students_per
    n = n_students * n_obs_per

    classroom_effects = rng.normal(0, 3.0, size=n_classrooms)
    student_effects = rng.normal(0, 1.5, size=n_students)

    classroom = np.repeat(np.arange(n_classrooms), n_students_per * n_obs_per)
    student_global = np.repeat(np.arange(n_students), n_obs_per)
    student = student_global % n_students_per
    x = rng.normal(0, 1, size=n)

    y = (10.0 + 0.5 * x
         + classroom_effects[classroom]
         + student_effects[student_global]
         + rng.normal(0, 1.0, size=n))

    return pd.DataFrame({
        'classroom': [f"c{i}" for i in classroom],
        'student': [f"st{i}" for i in student],
        'x': x,
        'y': y,
    })
