"""
Record types shared by the discovery, reconciliation, selection and
design-generation steps.

All records are immutable. A step that changes a selection returns a new
record instead of mutating the one it was given.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

LEVEL_LOWER = "lower"
LEVEL_HIGHER = "higher"

INCLUDE = "include"
EXCLUDE = "exclude"


@dataclass(frozen=True)
class ResultDirectory:
    """
    One completed FEAT run (``*.feat``) or higher-level analysis (``*.gfeat``).

    Parameters
    ----------
    path : Path
        Location of the result directory.
    subject : str
        Subject directory name (e.g. "sub-01", "pilot-02").
    session : str
        Session directory name (e.g. "ses-01", "baseline").
    level : str
        "lower" for ``*.feat`` run directories, "higher" for ``*.gfeat``.
    run : str, optional
        Run label digits as found on disk (e.g. "01"), None if absent.
    contrasts : frozenset of int
        Contrast (cope) indices found on disk when the directory was scanned.
    """

    path: Path
    subject: str
    session: str
    level: str = LEVEL_LOWER
    run: Optional[str] = None
    contrasts: FrozenSet[int] = field(default_factory=frozenset)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def contrast_count(self) -> int:
        return len(self.contrasts)

    def cope_file(self, index: int) -> Path:
        """Path of the cope image for contrast ``index`` inside this directory."""
        if self.level == LEVEL_LOWER:
            return self.path / "stats" / f"cope{index}.nii.gz"
        return self.path / f"cope{index}.feat" / "stats" / "cope1.nii.gz"


@dataclass(frozen=True)
class SubjectSessionGroup:
    """
    Reconciled runs of one subject-session.

    ``failure`` is None when reconciliation accepted a majority count; otherwise
    it holds the reason ("tie", "insufficient" or "empty") and ``valid`` is empty.
    """

    subject: str
    session: str
    candidates: Tuple[ResultDirectory, ...] = ()
    valid: Tuple[ResultDirectory, ...] = ()
    excluded: Tuple[Tuple[ResultDirectory, str], ...] = ()
    common_contrast_count: Optional[int] = None
    failure: Optional[str] = None
    warnings: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return f"{self.subject}:{self.session}"

    @property
    def is_excluded(self) -> bool:
        return self.failure is not None


@dataclass(frozen=True)
class SelectionRule:
    """One ``[-]subject[:session[:runs]]`` token of a selection string."""

    polarity: str
    subject: str
    session: Optional[str] = None
    runs: Tuple[str, ...] = ()

    @property
    def is_exclusion(self) -> bool:
        return self.polarity == EXCLUDE

    def matches(self, subject: str, session: str) -> bool:
        if self.subject != subject:
            return False
        return self.session is None or self.session == session


@dataclass(frozen=True)
class SessionSelection:
    """Directories kept for one subject-session after applying selection rules."""

    subject: str
    session: str
    directories: Tuple[ResultDirectory, ...] = ()
    common_contrast_count: Optional[int] = None
    excluded_by_user: bool = False

    @property
    def key(self) -> str:
        return f"{self.subject}:{self.session}"


@dataclass(frozen=True)
class SubjectEntry:
    """Directories contributed by one subject to a group-level analysis."""

    subject: str
    session: str
    directories: Tuple[ResultDirectory, ...] = ()

    def sorted_directories(self) -> List[ResultDirectory]:
        return sorted(self.directories, key=lambda d: str(d.path))


@dataclass(frozen=True)
class ContrastIntersection:
    """Contrast indices present in every selected directory."""

    indices: Tuple[int, ...]
    per_directory: Dict[Path, FrozenSet[int]] = field(default_factory=dict)

    def __contains__(self, index: int) -> bool:
        return index in self.indices

    def __iter__(self):
        return iter(self.indices)

    def __len__(self) -> int:
        return len(self.indices)


@dataclass(frozen=True)
class GeneratedConfig:
    """
    A materialised FEAT design file.

    ``cleanup_path`` is what gets removed once the engine has run or the user
    cancels: the design's own directory for fixed-effects designs, the file
    itself for mixed-effects designs.
    """

    template_path: Path
    output_path: Path
    substitutions: Dict[str, str] = field(default_factory=dict)
    multi_value_blocks: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    cleanup_path: Optional[Path] = None
    engine_output: Optional[Path] = None
    label: str = ""

    @property
    def removable_path(self) -> Path:
        return self.cleanup_path if self.cleanup_path is not None else self.output_path
