"""
Contrast-count reconciliation across the runs of one subject-session.

Runs produced by partially failed first-level processing can carry fewer
copes than their siblings. Runs are kept only when one cope count is shared
by a strict majority of the runs; the others are excluded with a warning.
"""

import logging
from typing import List, Optional, Sequence

import pandas as pd

from featcraft.core.models import ResultDirectory, SubjectSessionGroup

logger = logging.getLogger(__name__)


REASON_TIE = "tie"
REASON_INSUFFICIENT = "insufficient"
REASON_EMPTY = "empty"


def contrast_count_table(candidates: Sequence[ResultDirectory]) -> pd.DataFrame:
    """
    Tabulate the cope count of each candidate directory.

    Returns
    -------
    pd.DataFrame
        One row per candidate, in input order, with columns
        ``directory``, ``run`` and ``cope_count``.
    """
    return pd.DataFrame({
        "directory": [d.name for d in candidates],
        "run": [d.run for d in candidates],
        "cope_count": [d.contrast_count for d in candidates],
    })


def _unique_in_order(counts: pd.Series) -> str:
    return " ".join(str(c) for c in counts.drop_duplicates().tolist())


def reconcile_contrast_counts(
    candidates: Sequence[ResultDirectory],
    subject: Optional[str] = None,
    session: Optional[str] = None,
) -> SubjectSessionGroup:
    """
    Keep the runs that share the majority cope count.

    Parameters
    ----------
    candidates : sequence of ResultDirectory
        Run directories of one subject-session, in display order.
    subject, session : str, optional
        Group identity; taken from the first candidate when omitted.

    Returns
    -------
    SubjectSessionGroup
        Either the majority count with the valid runs and one warning per
        excluded run, or a failed group (reason "tie", "insufficient" or
        "empty") with a group-level warning.

    Notes
    -----
    A count is accepted only when its frequency is strictly greater than
    half the number of runs, so an exact half split (e.g. 2 of 4 runs with a
    unique most frequent count) is reported as insufficient, not as a tie.
    """
    candidates = tuple(candidates)
    if subject is None or session is None:
        if not candidates:
            raise ValueError("subject and session are required for an empty candidate list")
        subject = subject or candidates[0].subject
        session = session or candidates[0].session

    if not candidates:
        return SubjectSessionGroup(subject=subject, session=session, failure=REASON_EMPTY)

    table = contrast_count_table(candidates)
    frequencies = table["cope_count"].value_counts()
    max_freq = int(frequencies.max())
    most_common = sorted(int(c) for c in frequencies[frequencies == max_freq].index)

    if len(most_common) > 1:
        warning = f"Unequal cope counts found across runs ({_unique_in_order(table['cope_count'])})."
        logger.debug(f"{subject}:{session}: tie between cope counts {most_common}")
        return SubjectSessionGroup(
            subject=subject,
            session=session,
            candidates=candidates,
            failure=REASON_TIE,
            warnings=(warning,),
        )

    common_count = most_common[0]
    total = len(candidates)

    if 2 * max_freq <= total:
        warning = (
            f"Unequal cope counts found across runs ({_unique_in_order(table['cope_count'])}). "
            "Excluding this subject-session."
        )
        return SubjectSessionGroup(
            subject=subject,
            session=session,
            candidates=candidates,
            failure=REASON_INSUFFICIENT,
            warnings=(warning,),
        )

    valid: List[ResultDirectory] = []
    excluded = []
    warnings = []
    for directory, count in zip(candidates, table["cope_count"]):
        if count == common_count:
            valid.append(directory)
        else:
            reason = (
                f"{directory.name} does not have the common cope count "
                f"{common_count} and will be excluded."
            )
            excluded.append((directory, reason))
            warnings.append(reason)

    return SubjectSessionGroup(
        subject=subject,
        session=session,
        candidates=candidates,
        valid=tuple(valid),
        excluded=tuple(excluded),
        common_contrast_count=common_count,
        warnings=tuple(warnings),
    )
