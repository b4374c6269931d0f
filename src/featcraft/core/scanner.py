"""
Directory scanner for FEAT derivative trees.

This module handles:
- Subject/session directory discovery with several accepted naming schemes
- Numeric-aware ("version") sorting of discovered paths
- Discovery of lower-level (``*.feat``) and higher-level (``*.gfeat``) results
- Contrast (cope) index extraction from each result directory's layout
"""

import logging
import os
import re
from collections import OrderedDict
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from featcraft.core.models import (
    LEVEL_HIGHER,
    LEVEL_LOWER,
    ResultDirectory,
    SubjectEntry,
)

logger = logging.getLogger(__name__)


SUBJECT_PATTERNS = ["sub-*", "subject-*", "pilot-*", "subj-*", "subjpilot-*"]

SESSION_PATTERNS = [
    "ses-*", "session-*", "ses_*", "session_*", "ses*", "session*",
    "baseline", "endpoint", "ses-001", "ses-002",
]

# stats/cope<N>.nii.gz inside a run directory
LOWER_COPE_PATTERN = re.compile(r"^cope(\d+)\.nii\.gz$")
# cope<N>.feat inside a .gfeat directory
HIGHER_COPE_PATTERN = re.compile(r"^cope(\d+)\.feat$")

RUN_PATTERN = re.compile(r"run-(\d+)\.g?feat$")

_DIGITS = re.compile(r"(\d+)")


def version_sort_key(value: Union[str, Path]) -> List[Union[str, int]]:
    """
    Sort key that orders embedded numbers numerically (``sub-2`` < ``sub-10``).

    ``re.split`` with a capture group alternates text and digit chunks, so
    keys of different values always compare chunk types pairwise.
    """
    parts = _DIGITS.split(str(value))
    return [int(part) if index % 2 else part for index, part in enumerate(parts)]


def version_sorted(paths: Iterable[Union[str, Path]]) -> list:
    """Deduplicate and version-sort paths or names."""
    return sorted(set(paths), key=version_sort_key)


def matches_any(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatchcase(name, pattern) for pattern in patterns)


def find_matching_dirs(base: Union[str, Path], patterns: Sequence[str]) -> List[Path]:
    """
    List the immediate subdirectories of ``base`` whose name matches any pattern.

    A missing ``base`` is not an error: an empty list is returned.
    """
    base = Path(base)
    if not base.is_dir():
        logger.debug(f"Directory does not exist, nothing to scan: {base}")
        return []

    matches = [
        child for child in base.iterdir()
        if child.is_dir() and matches_any(child.name, patterns)
    ]
    return version_sorted(matches)


def parse_run_label(path: Union[str, Path]) -> Optional[str]:
    """Return the run digits of ``...run-01.feat`` style names, else None."""
    match = RUN_PATTERN.search(Path(path).name)
    return match.group(1) if match else None


def find_contrast_indices(path: Union[str, Path], level: str) -> FrozenSet[int]:
    """
    Scan a result directory for its contrast indices.

    Parameters
    ----------
    path : str or Path
        The ``*.feat`` or ``*.gfeat`` directory.
    level : str
        "lower": look for ``stats/cope<N>.nii.gz`` files.
        "higher": look for ``cope<N>.feat`` subdirectories.

    Returns
    -------
    frozenset of int
        Positive contrast indices; duplicates collapse.
    """
    path = Path(path)
    indices = set()

    if level == LEVEL_LOWER:
        stats_dir = path / "stats"
        if not stats_dir.is_dir():
            logger.warning(f"{path} (Stats directory not found)")
            return frozenset()
        for entry in stats_dir.iterdir():
            match = LOWER_COPE_PATTERN.match(entry.name)
            if match and entry.is_file():
                indices.add(int(match.group(1)))
    elif level == LEVEL_HIGHER:
        if not path.is_dir():
            return frozenset()
        for entry in path.iterdir():
            match = HIGHER_COPE_PATTERN.match(entry.name)
            if match and entry.is_dir():
                indices.add(int(match.group(1)))
    else:
        raise ValueError(f"Unknown directory level: {level}")

    return frozenset(i for i in indices if i > 0)


class DirectoryScanner:
    """
    Discover subjects, sessions and FEAT result directories.

    Parameters
    ----------
    subject_patterns : list of str, optional
        Glob patterns accepted as subject directory names.
    session_patterns : list of str, optional
        Glob patterns accepted as session directory names.
    """

    def __init__(
        self,
        subject_patterns: Optional[Sequence[str]] = None,
        session_patterns: Optional[Sequence[str]] = None,
    ):
        self.subject_patterns = list(subject_patterns or SUBJECT_PATTERNS)
        self.session_patterns = list(session_patterns or SESSION_PATTERNS)

    def subject_dirs(self, base: Union[str, Path]) -> List[Path]:
        return find_matching_dirs(base, self.subject_patterns)

    def session_dirs(self, subject_dir: Union[str, Path]) -> List[Path]:
        return find_matching_dirs(subject_dir, self.session_patterns)

    def session_names(self, analysis_dir: Union[str, Path]) -> List[str]:
        """
        Unique session names found anywhere below ``analysis_dir``.

        Result directories are not descended into.
        """
        analysis_dir = Path(analysis_dir)
        if not analysis_dir.is_dir():
            return []

        names = set()
        for root, dirs, _ in os.walk(analysis_dir):
            dirs[:] = [d for d in dirs if not d.endswith((".feat", ".gfeat"))]
            for d in dirs:
                if matches_any(d, self.session_patterns):
                    names.add(d)
        return version_sorted(names)

    def analysis_dirs(
        self,
        base: Union[str, Path],
        level: Optional[str] = None,
        name_pattern: Optional[str] = None,
    ) -> List[Path]:
        """
        Candidate analysis directories directly below ``base``.

        Parameters
        ----------
        base : str or Path
            Level directory (e.g. ``derivatives/fsl/level-1``).
        level : str, optional
            When given, keep only directories containing at least one
            ``*.feat`` ("lower") or ``*.gfeat`` ("higher") directory.
        name_pattern : str, optional
            Glob the directory name must match (e.g. ``*analysis*``).
        """
        base = Path(base)
        if not base.is_dir():
            return []

        suffix = {LEVEL_LOWER: "*.feat", LEVEL_HIGHER: "*.gfeat"}.get(level)
        found = []
        for child in base.iterdir():
            if not child.is_dir():
                continue
            if name_pattern and not fnmatchcase(child.name, name_pattern):
                continue
            if suffix and not any(p.is_dir() for p in child.rglob(suffix)):
                continue
            found.append(child)
        return version_sorted(found)

    def make_result(
        self,
        path: Union[str, Path],
        subject: str,
        session: str,
        level: str,
    ) -> ResultDirectory:
        path = Path(path)
        return ResultDirectory(
            path=path,
            subject=subject,
            session=session,
            level=level,
            run=parse_run_label(path),
            contrasts=find_contrast_indices(path, level),
        )

    def feat_dirs(self, session_dir: Union[str, Path], subject: str, session: str) -> List[ResultDirectory]:
        """Lower-level run directories in ``<session_dir>/func/*.feat``."""
        func_dir = Path(session_dir) / "func"
        if not func_dir.is_dir():
            return []
        paths = [p for p in func_dir.iterdir() if p.is_dir() and p.name.endswith(".feat")]
        return [self.make_result(p, subject, session, LEVEL_LOWER) for p in version_sorted(paths)]

    def gfeat_dirs(self, session_dir: Union[str, Path], subject: str, session: str) -> List[ResultDirectory]:
        """Higher-level directories in ``<session_dir>/*.gfeat``."""
        session_dir = Path(session_dir)
        if not session_dir.is_dir():
            return []
        paths = [p for p in session_dir.iterdir() if p.is_dir() and p.name.endswith(".gfeat")]
        return [self.make_result(p, subject, session, LEVEL_HIGHER) for p in version_sorted(paths)]

    def discover_runs(self, analysis_dir: Union[str, Path]) -> "OrderedDict[Tuple[str, str], List[ResultDirectory]]":
        """
        Map every ``(subject, session)`` of a level-1 analysis to its run directories.

        Keys are ordered by subject, then session; subject-sessions without
        any run directory are kept with an empty list.
        """
        runs: Dict[Tuple[str, str], List[ResultDirectory]] = OrderedDict()
        for subject_dir in self.subject_dirs(analysis_dir):
            for session_dir in self.session_dirs(subject_dir):
                key = (subject_dir.name, session_dir.name)
                runs[key] = self.feat_dirs(session_dir, *key)

        logger.debug(f"Discovered {len(runs)} subject-session(s) in {analysis_dir}")
        return runs

    def discover_higher_level(self, analysis_dir: Union[str, Path], session: str) -> List[SubjectEntry]:
        """
        Collect every subject's ``*.gfeat`` directories for one session.

        Subjects without the session or without any ``*.gfeat`` are skipped.
        """
        entries = []
        for subject_dir in self.subject_dirs(analysis_dir):
            gfeats = self.gfeat_dirs(subject_dir / session, subject_dir.name, session)
            if not gfeats:
                continue
            entries.append(SubjectEntry(subject_dir.name, session, tuple(gfeats)))
        return entries
