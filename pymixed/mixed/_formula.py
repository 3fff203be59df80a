"""
Model formula parsing.

Turns a Wilkinson-style formula string into a structured description of
the response, the fixed-effects terms and the random-effects terms:

    "rt ~ 1 + spkr * prec + (1 + prec | item) + (1 | subj)"

Supported syntax:
    - ``1`` / ``0`` / ``-1``  intercept on or off
    - ``a``                   main effect
    - ``a & b`` or ``a:b``    interaction only
    - ``a * b``               main effects plus all interactions
    - ``(expr | g)``          random effects with unstructured covariance
    - ``(expr || g)``         random effects with diagonal covariance
    - ``(1 | a/b)``           nested grouping, expands to ``(1|a) + (1|a:b)``

Random-effects expressions include an intercept unless ``0`` is given.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from itertools import combinations

from pymixed.core.exceptions import FormulaError

_IDENT = r"[A-Za-z_][A-Za-z0-9_.]*"
_IDENT_RE = re.compile(rf"^{_IDENT}$")
_RANDOM_RE = re.compile(r"\(([^()|]*?)(\|\|?)([^()|]*?)\)")


@dataclass(frozen=True)
class RandomTermSpec:
    """One parenthesized random-effects term.

    Attributes:
        group: Grouping factor name. Interaction groupings such as
            ``school:class`` name several columns joined by ``:``.
        intercept: Whether the term has a random intercept.
        terms: Random slope terms, each a tuple of variable names
            (length > 1 for interactions).
        correlated: False for ``||`` terms (diagonal covariance).
    """
    group: str
    intercept: bool
    terms: tuple[tuple[str, ...], ...]
    correlated: bool = True

    @property
    def group_columns(self) -> tuple[str, ...]:
        return tuple(self.group.split(':'))

    @property
    def q(self) -> int:
        return int(self.intercept) + len(self.terms)


@dataclass(frozen=True)
class ParsedFormula:
    """Structured model formula.

    Attributes:
        formula: The original formula string.
        response: Response column name.
        intercept: Whether the fixed effects include an intercept.
        fixed_terms: Fixed-effect terms in model-matrix order, each a
            tuple of variable names.
        random_terms: Random-effects terms in order of appearance.
    """
    formula: str
    response: str
    intercept: bool
    fixed_terms: tuple[tuple[str, ...], ...]
    random_terms: tuple[RandomTermSpec, ...]

    def variables(self) -> set[str]:
        """All column names the formula refers to."""
        names = {self.response}
        for term in self.fixed_terms:
            names.update(term)
        for rt in self.random_terms:
            names.update(rt.group_columns)
            for term in rt.terms:
                names.update(term)
        return names


def parse_formula(formula: str) -> ParsedFormula:
    """Parse a mixed-model formula string.

    Args:
        formula: Formula such as ``"y ~ 1 + x + (1 | g)"``.

    Returns:
        ParsedFormula.

    Raises:
        FormulaError: If the formula is malformed, has no response, has an
            empty term, or names the same grouping factor twice.
    """
    if not isinstance(formula, str):
        raise FormulaError(
            f"Formula must be a string, got {type(formula).__name__}"
        )
    if formula.count('~') != 1:
        raise FormulaError(
            f"Formula must contain exactly one '~', got {formula!r}",
            formula=formula,
        )

    lhs, rhs = formula.split('~')
    response = lhs.strip()
    if not _IDENT_RE.match(response):
        raise FormulaError(
            f"Invalid response {response!r} in formula {formula!r}",
            formula=formula,
            term=response,
        )

    random_terms: list[RandomTermSpec] = []
    for match in _RANDOM_RE.finditer(rhs):
        random_terms.extend(_parse_random_term(match, formula))
    fixed_part = _RANDOM_RE.sub('', rhs)

    if '(' in fixed_part or ')' in fixed_part or '|' in fixed_part:
        raise FormulaError(
            f"Unbalanced or malformed random-effects term in {formula!r}",
            formula=formula,
        )

    if not rhs.strip():
        raise FormulaError(f"Formula {formula!r} has no terms", formula=formula)
    intercept, fixed_terms = _parse_term_list(fixed_part, formula, allow_empty=True)
    if not intercept and not fixed_terms and not random_terms:
        raise FormulaError(f"Formula {formula!r} has no terms", formula=formula)

    seen: set[str] = set()
    for rt in random_terms:
        if rt.group in seen:
            raise FormulaError(
                f"Grouping factor '{rt.group}' appears in more than one "
                f"random-effects term; combine them into one term",
                formula=formula,
                term=rt.group,
            )
        seen.add(rt.group)

    return ParsedFormula(
        formula=formula,
        response=response,
        intercept=intercept,
        fixed_terms=tuple(fixed_terms),
        random_terms=tuple(random_terms),
    )


def _parse_random_term(match: re.Match, formula: str) -> list[RandomTermSpec]:
    expr, bar, group = match.group(1), match.group(2), match.group(3).strip()
    text = match.group(0)

    if not expr.strip():
        raise FormulaError(
            f"Empty random-effects term {text!r}", formula=formula, term=text
        )

    intercept, terms = _parse_term_list(expr, formula, allow_empty=False)
    if not intercept and not terms:
        raise FormulaError(
            f"Random-effects term {text!r} has no columns",
            formula=formula,
            term=text,
        )

    # (expr | a/b) expands to (expr | a) + (expr | a:b)
    parts = [p.strip() for p in group.split('/')]
    groups = [':'.join(parts[:i + 1]) for i in range(len(parts))]
    for g in groups:
        for name in g.split(':'):
            if not _IDENT_RE.match(name):
                raise FormulaError(
                    f"Invalid grouping factor {group!r} in {text!r}",
                    formula=formula,
                    term=text,
                )

    return [
        RandomTermSpec(
            group=g,
            intercept=intercept,
            terms=tuple(terms),
            correlated=(bar == '|'),
        )
        for g in groups
    ]


def _parse_term_list(
    text: str,
    formula: str,
    allow_empty: bool,
) -> tuple[bool, list[tuple[str, ...]]]:
    """Parse ``1 + a + b & c + d * e`` into (intercept, terms)."""
    text = re.sub(r"-\s*1\b", "+ 0", text)
    if '-' in text:
        raise FormulaError(
            f"Term removal with '-' is only supported as '-1' in {formula!r}",
            formula=formula,
        )

    intercept = True
    terms: list[tuple[str, ...]] = []
    seen: set[frozenset] = set()

    for raw in (t.strip() for t in text.split('+')):
        if not raw:
            if allow_empty:
                continue
            raise FormulaError(
                f"Empty term in {text.strip()!r} of formula {formula!r}",
                formula=formula,
            )
        if raw == '1':
            intercept = True
            continue
        if raw == '0':
            intercept = False
            continue

        for term in _expand_term(raw, formula):
            key = frozenset(term)
            if key not in seen:
                seen.add(key)
                terms.append(term)

    # Main effects before interactions, stable within each order
    terms.sort(key=len)
    return intercept, terms


def _expand_term(raw: str, formula: str) -> list[tuple[str, ...]]:
    if '*' in raw:
        names = [n.strip() for n in raw.split('*')]
        _check_names(names, raw, formula)
        expanded = []
        for r in range(1, len(names) + 1):
            for combo in combinations(names, r):
                expanded.append(tuple(combo))
        return expanded

    names = [n.strip() for n in re.split(r"[&:]", raw)]
    _check_names(names, raw, formula)
    if len(set(names)) != len(names):
        raise FormulaError(
            f"Repeated variable in interaction {raw!r}", formula=formula, term=raw
        )
    return [tuple(names)]


def _check_names(names: list[str], raw: str, formula: str) -> None:
    for name in names:
        if not _IDENT_RE.match(name):
            raise FormulaError(
                f"Invalid term {raw!r} in formula {formula!r}",
                formula=formula,
                term=raw,
            )
