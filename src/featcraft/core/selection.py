"""
Subject, session and run selection.

This module handles:
- Parsing the ``[-]subject[:session[:run1,run2,...]]`` selection mini-language
- Applying inclusion/exclusion rules to reconciled subject-sessions
- The immutable group-level selection state edited by the modify loop
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence, Tuple

from featcraft.core.models import (
    EXCLUDE,
    INCLUDE,
    ResultDirectory,
    SelectionRule,
    SessionSelection,
    SubjectEntry,
    SubjectSessionGroup,
)
from featcraft.core.scanner import version_sort_key

logger = logging.getLogger(__name__)


class SelectionError(ValueError):
    """
    Raised when a selection cannot be applied.

    Parameters
    ----------
    message : str
        Summary message.
    invalid : list of str, optional
        One entry per rejected token, with the reason in parentheses.
    """

    def __init__(self, message: str, invalid: Optional[Sequence[str]] = None):
        self.invalid = list(invalid or [])
        if self.invalid:
            message = message + "\n" + "\n".join(f"  - {item}" for item in self.invalid)
        super().__init__(message)


def normalize_run(label: str) -> str:
    """
    Canonical run number: drop an optional ``run-`` prefix and leading zeros.

    ``"run-1"``, ``"run-01"``, ``"01"`` and ``"1"`` all become ``"1"``.
    """
    value = label.strip()
    if value.lower().startswith("run-"):
        value = value[4:]
    if not value.isdigit():
        raise ValueError(f"Invalid run label: {label!r}")
    return str(int(value))


def run_number(directory: ResultDirectory) -> Optional[str]:
    if directory.run is None:
        return None
    return normalize_run(directory.run)


def parse_selection(text: Optional[str], subjects: Iterable[str]) -> List[SelectionRule]:
    """
    Parse a space-separated selection string.

    Parameters
    ----------
    text : str or None
        E.g. ``"sub-01:ses-01:02,03 -sub-03:ses-01 -sub-04"``. Empty or None
        selects everything.
    subjects : iterable of str
        Subject names discovered on disk.

    Returns
    -------
    list of SelectionRule
        Rules in input order.

    Raises
    ------
    SelectionError
        If any token names an unknown subject or is malformed. Nothing is
        applied in that case.
    """
    known = set(subjects)
    rules = []
    invalid = []

    for token in (text or "").split():
        polarity = EXCLUDE if token.startswith("-") else INCLUDE
        body = token[1:] if polarity == EXCLUDE else token
        parts = body.split(":")

        if len(parts) > 3 or not parts[0]:
            invalid.append(f"{token} (Invalid format)")
            continue

        subject = parts[0]
        if subject not in known:
            invalid.append(f"{token} (Subject not found)")
            continue

        session = parts[1] if len(parts) > 1 and parts[1] else None
        runs: Tuple[str, ...] = ()
        if len(parts) > 2 and parts[2]:
            try:
                runs = tuple(normalize_run(r) for r in parts[2].split(",") if r)
            except ValueError:
                invalid.append(f"{token} (Invalid run number)")
                continue

        rules.append(SelectionRule(polarity=polarity, subject=subject, session=session, runs=runs))

    if invalid:
        raise SelectionError("The following selections are invalid:", invalid)

    logger.debug(f"Parsed {len(rules)} selection rule(s) from {text!r}")
    return rules


def _filter_runs(directories: Sequence[ResultDirectory], runs: Iterable[str], keep: bool) -> List[ResultDirectory]:
    runs = set(runs)
    return [d for d in directories if (run_number(d) in runs) == keep]


def _most_specific(rules: Sequence[SelectionRule]) -> List[SelectionRule]:
    """Rules naming a session win over subject-only rules."""
    with_session = [r for r in rules if r.session is not None]
    return with_session or list(rules)


def apply_selection(
    groups: Sequence[SubjectSessionGroup],
    rules: Sequence[SelectionRule],
) -> List[SessionSelection]:
    """
    Apply selection rules to reconciled subject-sessions.

    Every group yields one ``SessionSelection`` in input order. Subject-sessions
    not named by any inclusion rule keep all their valid runs. Inclusion rules
    with runs narrow the runs of the subject-sessions they match, and rules
    naming the session take precedence over subject-only rules; exclusion
    rules without runs drop the matched subject (no session) or subject-session,
    and exclusion rules with runs remove those runs afterwards.
    """
    inclusions = [r for r in rules if not r.is_exclusion]
    exclusions = [r for r in rules if r.is_exclusion]
    selections = []

    for group in groups:
        dropped = any(
            r.matches(group.subject, group.session) and not r.runs for r in exclusions
        )
        if dropped:
            selections.append(SessionSelection(
                subject=group.subject,
                session=group.session,
                common_contrast_count=group.common_contrast_count,
                excluded_by_user=True,
            ))
            continue

        directories = list(group.valid)

        matching = _most_specific(
            [r for r in inclusions if r.matches(group.subject, group.session)]
        )
        if matching and all(r.runs for r in matching):
            wanted = {run for r in matching for run in r.runs}
            directories = _filter_runs(directories, wanted, keep=True)

        for rule in exclusions:
            if rule.runs and rule.matches(group.subject, group.session):
                directories = _filter_runs(directories, rule.runs, keep=False)

        selections.append(SessionSelection(
            subject=group.subject,
            session=group.session,
            directories=tuple(directories),
            common_contrast_count=group.common_contrast_count,
        ))

    return selections


# Modify-loop commands
CONFIRM = "confirm"
ADD = "add"
REMOVE = "exclude"


def parse_modify_command(text: Optional[str]) -> Tuple[str, Optional[str]]:
    """
    Interpret one answer of the group-level modify loop.

    Returns
    -------
    tuple of (str, str or None)
        ``("confirm", None)`` for an empty answer, ``("add", None)`` for
        ``add`` and ``("exclude", subject)`` for ``-subject``.

    Raises
    ------
    SelectionError
        For anything else, including several subjects at once.
    """
    answer = (text or "").strip()
    if not answer:
        return CONFIRM, None
    if answer.lower() == "add":
        return ADD, None
    if answer.startswith("-"):
        subject = answer[1:].strip()
        if not subject:
            raise SelectionError("No valid subject provided. Please try again.")
        if any(ch.isspace() for ch in subject):
            raise SelectionError("Only one subject can be removed at a time. Please try again.")
        return REMOVE, subject
    raise SelectionError("Invalid input. Please try again.")


@dataclass(frozen=True)
class SelectionState:
    """
    Current group-level selection: one entry per subject.

    Every edit returns a new state.
    """

    entries: Tuple[SubjectEntry, ...] = ()

    @property
    def subjects(self) -> List[str]:
        return [e.subject for e in self.entries]

    @property
    def total_directories(self) -> int:
        return sum(len(e.directories) for e in self.entries)

    def sorted_entries(self) -> List[SubjectEntry]:
        return sorted(self.entries, key=lambda e: version_sort_key(e.subject))

    def directories(self) -> List[ResultDirectory]:
        """All directories ordered by subject, then by path within a subject."""
        return [d for entry in self.sorted_entries() for d in entry.sorted_directories()]

    def exclude_subject(self, subject: str) -> "SelectionState":
        if subject not in self.subjects:
            raise SelectionError(
                f"Subject {subject} is either not in the dataset or has already been excluded. "
                "Please check your input and try again."
            )
        return replace(self, entries=tuple(e for e in self.entries if e.subject != subject))

    def add_or_replace(self, entry: SubjectEntry) -> "SelectionState":
        """Replace the subject's entry if present, otherwise append it."""
        if entry.subject in self.subjects:
            entries = tuple(entry if e.subject == entry.subject else e for e in self.entries)
        else:
            entries = self.entries + (entry,)
        return replace(self, entries=entries)
