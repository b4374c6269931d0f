"""
Contrast intersection across heterogeneous result directories.

Group-level analysis can only carry a contrast forward when every selected
directory, lower-level run or higher-level ``.gfeat`` alike, provides it.
"""

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Sequence

from featcraft.core.models import ContrastIntersection, ResultDirectory

logger = logging.getLogger(__name__)


class IntersectionError(RuntimeError):
    """Raised when the selected directories share no contrast."""


class ContrastConsistencyError(AssertionError):
    """Raised when a cope file of an intersected contrast is missing on disk."""


def intersect_contrasts(directories: Sequence[ResultDirectory]) -> ContrastIntersection:
    """
    Compute the contrast indices present in every directory.

    Parameters
    ----------
    directories : sequence of ResultDirectory
        Final selection; lower and higher levels may be mixed. Repeating a
        directory does not change the result.

    Returns
    -------
    ContrastIntersection
        Sorted common indices and the indices found per directory.

    Raises
    ------
    IntersectionError
        If no directory is given or no contrast is common to all of them.
    """
    if not directories:
        raise IntersectionError("No directories selected; cannot compute common copes.")

    per_directory: Dict[Path, frozenset] = OrderedDict()
    for directory in directories:
        per_directory[directory.path] = frozenset(directory.contrasts)

    common = frozenset.intersection(*per_directory.values())
    if not common:
        raise IntersectionError("No common copes found across all selected directories.")

    indices = tuple(sorted(common))
    logger.debug(f"Common copes across {len(per_directory)} directories: {list(indices)}")
    return ContrastIntersection(indices=indices, per_directory=dict(per_directory))


def resolve_cope_files(
    directories: Sequence[ResultDirectory],
    intersection: ContrastIntersection,
) -> "OrderedDict[int, List[Path]]":
    """
    Locate the cope image of every (contrast, directory) pair.

    Parameters
    ----------
    directories : sequence of ResultDirectory
        Directories in the order their inputs are numbered in the design.
    intersection : ContrastIntersection
        Result of :func:`intersect_contrasts` on the same directories.

    Returns
    -------
    OrderedDict
        Contrast index -> list of cope file paths, aligned with ``directories``.

    Raises
    ------
    ContrastConsistencyError
        If any expected cope file does not exist.
    """
    resolved: Dict[int, List[Path]] = OrderedDict()
    for index in intersection:
        files = []
        for directory in directories:
            cope_file = directory.cope_file(index)
            if not cope_file.is_file():
                raise ContrastConsistencyError(
                    f"Missing cope{index} for subject {directory.subject} in directory "
                    f"{directory.path} (expected {cope_file})"
                )
            files.append(cope_file)
        resolved[index] = files
    return resolved
