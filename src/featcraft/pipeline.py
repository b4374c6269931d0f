"""
Interactive pipelines for higher-level FEAT analyses.

This module drives the two interactive flows:

- :class:`FixedEffectsPipeline` (second level): combines the runs of each
  subject-session with a fixed-effects design.
- :class:`MixedEffectsPipeline` (third level): combines one directory per
  subject with a FLAME 1 mixed-effects design, one design per common cope.

Both follow the same sequence: collect inputs, reconcile, select, confirm,
generate designs, confirm again, then run FEAT on each design in turn.
Generated designs are removed on every exit path by an
:class:`~featcraft.core.design.ArtifactRegistry`.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from featcraft.config import (
    DEFAULT_CLUSTER_P_THRESHOLD,
    DEFAULT_Z_THRESHOLD,
    Config,
    load_config,
)
from featcraft.core.design import (
    ArtifactRegistry,
    DesignGenerator,
    generate_fixed_effects_design,
    generate_mixed_effects_design,
)
from featcraft.core.engine import FeatRunner
from featcraft.core.intersect import intersect_contrasts, resolve_cope_files
from featcraft.core.models import (
    LEVEL_HIGHER,
    LEVEL_LOWER,
    GeneratedConfig,
    SessionSelection,
    SubjectEntry,
    SubjectSessionGroup,
)
from featcraft.core.reconcile import REASON_TIE, reconcile_contrast_counts
from featcraft.core.scanner import DirectoryScanner
from featcraft.core.selection import (
    ADD,
    CONFIRM,
    REMOVE,
    SelectionError,
    SelectionState,
    apply_selection,
    parse_modify_command,
    parse_selection,
)

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "featcraft"
CONSOLE_FORMAT = "%(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    log_dir: Optional[Union[str, Path]] = None,
    script_name: str = "featcraft",
    verbose: int = 1,
) -> Optional[Path]:
    """
    Configure console and file logging for the ``featcraft`` package.

    Parameters
    ----------
    log_dir : str or Path, optional
        Directory for the timestamped log file. No file is written when None.
    script_name : str
        Prefix of the log file name.
    verbose : int
        0 = warnings only, 1 = normal, 2 or more = debug (console level).

    Returns
    -------
    Path or None
        Path of the log file, if one was created.
    """
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG)

    # Replace handlers from an earlier call
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    package_logger.addHandler(console_handler)

    log_file = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"{script_name}_{timestamp}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        package_logger.addHandler(file_handler)

    return log_file


class Prompter:
    """
    Line-oriented questions on the terminal.

    Parameters
    ----------
    input_func : callable
        Reads one answer given a prompt string. Tests pass a scripted
        function instead of :func:`input`.
    assume_yes : bool
        Answer every final confirmation with yes.
    """

    def __init__(self, input_func: Callable[[str], str] = input, assume_yes: bool = False):
        self.input_func = input_func
        self.assume_yes = assume_yes

    def ask(self, message: str, default: Optional[str] = None) -> str:
        """Ask a free-text question; an empty answer returns ``default``."""
        answer = self.input_func(message).strip()
        logger.debug(f"{message.strip()} {answer!r}")
        if not answer and default is not None:
            return default
        return answer

    def ask_float(self, message: str, default: float) -> float:
        while True:
            answer = self.ask(message)
            if not answer:
                return default
            try:
                return float(answer)
            except ValueError:
                logger.warning(f"Invalid number: {answer}. Please try again.")

    def choose(self, options: Sequence[Any], labels: Optional[Sequence[str]] = None) -> Any:
        """
        List numbered options and return the one picked by number.

        Raises
        ------
        ValueError
            If there is nothing to choose from.
        """
        if not options:
            raise ValueError("Nothing to choose from")
        labels = list(labels) if labels is not None else [str(o) for o in options]
        for index, label in enumerate(labels, start=1):
            logger.info(f"{index}) {label}")
        logger.info("")

        while True:
            answer = self.ask("Please enter your choice: ")
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            logger.info("Invalid selection. Please try again.")

    def confirm(self, message: str) -> bool:
        """
        Final go/no-go question: Enter confirms, "n" or end of input cancels.

        ``KeyboardInterrupt`` is not caught.
        """
        if self.assume_yes:
            logger.debug(f"{message.strip()} (assumed yes)")
            return True
        try:
            answer = self.ask(message)
        except EOFError:
            return False
        return answer.lower() not in ("n", "no")


def _as_config(config: Optional[Union[Config, str, Path, Dict]]) -> Config:
    if config is None:
        return Config()
    if isinstance(config, Config):
        return config
    if isinstance(config, dict):
        return Config(**config)
    return load_config(config)


def _relative(path: Union[str, Path], base: Path) -> str:
    try:
        return str(Path(path).relative_to(base))
    except ValueError:
        return str(path)


class _Pipeline:
    """Shared setup for the interactive pipelines."""

    script_name = "featcraft"
    section = ""
    template_kind = ""

    def __init__(
        self,
        config: Optional[Union[Config, str, Path, Dict]] = None,
        prompter: Optional[Prompter] = None,
        scanner: Optional[DirectoryScanner] = None,
        runner: Optional[FeatRunner] = None,
        analysis_dir: Optional[Union[str, Path]] = None,
        log_dir: Optional[Union[str, Path]] = None,
    ):
        self.config = _as_config(config)
        self.prompter = prompter or Prompter()
        self.scanner = scanner or DirectoryScanner(
            self.config.get("naming.subject_patterns"),
            self.config.get("naming.session_patterns"),
        )
        self.runner = runner or FeatRunner(
            self.config.get("engine.command"),
            on_error=self.config.get(f"{self.section}.on_engine_error"),
        )
        self.analysis_dir = Path(analysis_dir) if analysis_dir else None
        self.log_file = None
        if log_dir is not None:
            self.log_file = setup_logging(log_dir, self.script_name, self.config.get("verbose", 1))
            logger.info(f"Logging to: {self.log_file}")

    @property
    def base_dir(self) -> Path:
        return self.config.base_dir

    @property
    def interactive(self) -> bool:
        return bool(self.config.get("interactive", True))

    def _rel(self, path: Union[str, Path]) -> str:
        return _relative(path, self.base_dir)

    def _design_generator(self) -> DesignGenerator:
        return DesignGenerator(
            self.config.template_path(self.template_kind),
            self.config.resolve_path("paths.standard_image"),
        )

    def _check_engine(self) -> None:
        if not self.runner.is_available():
            raise FileNotFoundError(
                f"FEAT command not found: {self.runner.command[0]}. "
                "Make sure FSL is set up or set engine.command."
            )

    def _choose_analysis_dir(self, candidates: List[Path], empty_message: str) -> Path:
        if self.analysis_dir is not None:
            analysis_dir = self.analysis_dir
            if not analysis_dir.is_absolute():
                analysis_dir = self.base_dir / analysis_dir
            if not analysis_dir.is_dir():
                raise FileNotFoundError(f"Analysis directory not found: {analysis_dir}")
            return analysis_dir

        if not candidates:
            raise FileNotFoundError(empty_message)
        if not self.interactive:
            if len(candidates) == 1:
                return candidates[0]
            raise ValueError("Several analysis directories found; choose one with --analysis-dir")
        return self.prompter.choose(candidates, [self._rel(c) for c in candidates])

    def _thresholds(self, level_name: str) -> Tuple[float, float]:
        z = self.config.get("thresholds.z_threshold")
        p = self.config.get("thresholds.cluster_p_threshold")
        if (z is None or p is None) and self.interactive:
            logger.info("\n=== FEAT Thresholding Options ===")
            logger.info(
                f"You can specify the Z threshold and Cluster P threshold for the {level_name}."
            )
            logger.info(
                f"Press Enter/Return to use default values (Z threshold: {DEFAULT_Z_THRESHOLD}, "
                f"Cluster P threshold: {DEFAULT_CLUSTER_P_THRESHOLD}).\n"
            )
        if z is None:
            z = DEFAULT_Z_THRESHOLD
            if self.interactive:
                z = self.prompter.ask_float(f"Enter Z threshold (default {DEFAULT_Z_THRESHOLD}): ", z)
        if p is None:
            p = DEFAULT_CLUSTER_P_THRESHOLD
            if self.interactive:
                p = self.prompter.ask_float(
                    f"Enter Cluster P threshold (default {DEFAULT_CLUSTER_P_THRESHOLD}): ", p
                )
        if z <= 0:
            raise ValueError(f"Z threshold must be positive, got {z}")
        if not 0 < p < 1:
            raise ValueError(f"Cluster P threshold must be between 0 and 1, got {p}")
        logger.info(f"Using Z threshold: {z}")
        logger.info(f"Using Cluster P threshold: {p}")
        return z, p

    def _ask_name(self, key: str, message: str) -> Optional[str]:
        value = self.config.get(key)
        if value is None and self.interactive:
            value = self.prompter.ask(message)
        return value or None

    def _run_designs(
        self,
        registry: ArtifactRegistry,
        results: Dict[str, Any],
        title: str,
        confirm_message: str,
    ) -> Dict[str, Any]:
        """Confirm, then run FEAT on every registered design and release it."""
        if not self.prompter.confirm(confirm_message):
            logger.warning("Cancelled by user. Removing generated design files...")
            results["cancelled"] = True
            return results

        logger.info(f"\n=== {title} ===")
        for design in registry.artifacts:
            logger.info(f"\n--- Processing Design File: {design.label} ---")
            logger.info(f"- {self._rel(design.output_path)}")
            returncode = self.runner.run(design)
            if returncode == 0:
                results["completed"].append(design.label)
                logger.info(f"\nFinished running FEAT with:\n- {self._rel(design.output_path)}")
            else:
                results["failed"].append(design.label)
            registry.release(design)

        return results


class FixedEffectsPipeline(_Pipeline):
    """
    Second-level fixed-effects analysis over the runs of each subject-session.

    Parameters
    ----------
    config : Config, str, Path, or dict, optional
        Configuration (Config object, path to config file, or dict).
    prompter : Prompter, optional
        Source of interactive answers.
    scanner : DirectoryScanner, optional
        Directory scanner; built from ``naming`` settings when omitted.
    runner : FeatRunner, optional
        Engine runner; built from ``engine.command`` and
        ``fixed_effects.on_engine_error`` when omitted.
    analysis_dir : str or Path, optional
        Level-1 analysis directory; asked for when omitted.
    selection : str, optional
        Selection string; asked for when omitted in interactive mode.
    log_dir : str or Path, optional
        Where to write the timestamped log file.
    """

    script_name = "second_level_analysis"
    section = "fixed_effects"
    template_kind = "fixed_effects"

    def __init__(self, *args, selection: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.selection = selection

    def select_analysis_dir(self) -> Path:
        level1_dir = self.config.resolve_path("paths.level1_dir")
        candidates = self.scanner.analysis_dirs(
            level1_dir, name_pattern=self.config.get("naming.analysis_pattern")
        )
        if self.analysis_dir is None:
            logger.info("\n=== First-Level Analysis Directory Selection ===")
            logger.info(
                "Please select a first-level analysis directory for second-level "
                "fixed effects processing from the options below:\n"
            )
        analysis_dir = self._choose_analysis_dir(
            candidates, f"No analysis directories found in {level1_dir}."
        )
        logger.info(f"\nYou have selected the following analysis directory for fixed effects:\n{analysis_dir}")
        return analysis_dir

    def reconcile(self, analysis_dir: Path) -> List[SubjectSessionGroup]:
        """Discover the runs of every subject-session and reconcile their cope counts."""
        runs = self.scanner.discover_runs(analysis_dir)
        if not runs:
            raise FileNotFoundError(f"No subject directories found in {analysis_dir}.")

        logger.info("\n=== Listing First-Level Feat Directories ===")
        logger.info(
            "The following feat directories will be used as inputs for the "
            "second-level fixed effects analysis:\n"
        )

        groups = []
        for (subject, session), candidates in runs.items():
            group = reconcile_contrast_counts(candidates, subject, session)
            groups.append(group)
            self._display_group(group)
        return groups

    def _display_group(self, group: SubjectSessionGroup) -> None:
        logger.info(f"--- Subject: {group.subject} | Session: {group.session} ---\n")
        if not group.candidates:
            logger.info("No feat directories found.\n")
            return

        if group.is_excluded:
            logger.info("Warnings:")
            for warning in group.warnings:
                logger.warning(f"  [Warning] {warning}")
            if group.failure == REASON_TIE:
                logger.info(f"\nExcluding subject-session {group.key} due to tie in cope counts.\n")
            else:
                logger.info(
                    f"\nExcluding subject-session {group.key} due to insufficient runs "
                    "with the same cope count.\n"
                )
            return

        logger.info("Valid Feat Directories:")
        for directory in group.valid:
            logger.info(f"  • {self._rel(directory.path)}")
        if group.warnings:
            logger.info("\nWarnings:")
            for warning in group.warnings:
                logger.warning(f"  [Warning] {warning}")
        logger.info("")

    def select(self, groups: Sequence[SubjectSessionGroup]) -> List[SessionSelection]:
        """Apply the selection string, asking again until it is valid."""
        subjects = sorted({g.subject for g in groups})
        text = self.selection

        if text is None and self.interactive:
            logger.info("\n=== Subject, Session, and Run Selection ===")
            logger.info("To include or exclude certain subjects, sessions, or runs, specify your selection using the format:")
            logger.info("'subject[:session[:runs]]' to include, or '-subject[:session[:runs]]' to exclude.")
            logger.info("\nFor example:")
            logger.info("  To include: 'sub-01:ses-01:02,03'")
            logger.info("  To exclude: '-sub-03:ses-01 -sub-04'")
            logger.info("\nPress Enter/Return to include all by default.\n")

        while True:
            if text is None:
                text = self.prompter.ask("Enter subject, session, and run selections (or press Enter/Return for all): ") if self.interactive else ""
            try:
                rules = parse_selection(text, subjects)
            except SelectionError as e:
                logger.warning(f"\nWarning: {e}")
                if not self.interactive or self.selection is not None:
                    raise
                text = None
                continue
            return apply_selection(groups, rules)

    def output_path(self, analysis_dir: Path, subject: str, session: str, task: Optional[str]) -> Path:
        """``<level2>/<analysis>/<subject>/<session>/<subject>_<session>[_task-<task>]_desc-fixed-effects``"""
        name = f"{subject}_{session}"
        if task:
            name += f"_task-{task}"
        name += "_desc-fixed-effects"
        level2_dir = self.config.resolve_path("paths.level2_dir")
        return level2_dir / analysis_dir.name / subject / session / name

    def plan(
        self,
        analysis_dir: Path,
        selections: Sequence[SessionSelection],
        task: Optional[str],
    ) -> Tuple[List[Tuple[SessionSelection, Path]], List[str]]:
        """
        Decide which subject-sessions get a design.

        Returns
        -------
        tuple
            ``(planned, skipped)``: planned ``(selection, output_path)`` pairs and
            the keys of skipped subject-sessions.
        """
        min_runs = int(self.config.get("fixed_effects.min_runs"))
        planned = []
        skipped = []

        logger.info("\n=== Confirm Your Selections for Fixed Effects Analysis ===")
        for selection in selections:
            logger.info(f"\nSubject: {selection.subject} | Session: {selection.session}")
            logger.info("----------------------------------------")

            if selection.excluded_by_user:
                logger.info("  - Excluded based on your selections.")
                skipped.append(selection.key)
                continue
            if not selection.directories:
                logger.info("  - No matching directories found.")
                skipped.append(selection.key)
                continue
            if len(selection.directories) < min_runs:
                logger.info(
                    f"  - Not enough runs for fixed effects analysis "
                    f"(minimum {min_runs} runs required). Skipping."
                )
                skipped.append(selection.key)
                continue

            logger.info("Selected Feat Directories:")
            for directory in selection.directories:
                logger.info(f"  • {self._rel(directory.path)}")

            output_path = self.output_path(analysis_dir, selection.subject, selection.session, task)
            gfeat = output_path.with_name(output_path.name + ".gfeat")
            logger.info(f"\nOutput Directory:\n- {self._rel(gfeat)}")
            if gfeat.exists():
                logger.info(
                    "\n[Notice] Output directory already exists. "
                    "Skipping fixed effects analysis for this subject-session."
                )
                skipped.append(selection.key)
                continue

            planned.append((selection, output_path))

        return planned, skipped

    def run(self) -> Dict[str, Any]:
        """
        Run the complete second-level flow.

        Returns
        -------
        dict
            ``analysis_dir``, ``groups``, ``selections``, ``designs`` (every
            generated design), ``completed``/``failed`` (design labels),
            ``skipped`` (subject-session keys) and ``cancelled``.
        """
        generator = self._design_generator()
        self._check_engine()
        analysis_dir = self.select_analysis_dir()
        groups = self.reconcile(analysis_dir)
        selections = self.select(groups)

        task = self._ask_name(
            "fixed_effects.task_name",
            "Enter task name (or press Enter for default): ",
        )
        z, p = self._thresholds("fixed effects analysis")

        planned, skipped = self.plan(analysis_dir, selections, task)
        results: Dict[str, Any] = {
            "analysis_dir": analysis_dir,
            "groups": groups,
            "selections": selections,
            "designs": [],
            "completed": [],
            "failed": [],
            "skipped": skipped,
            "cancelled": False,
        }

        if not planned:
            logger.info("\n=== No new analyses to run. All specified outputs already exist or were excluded. ===\n")
            return results

        with ArtifactRegistry() as registry:
            for selection, output_path in planned:
                design = generate_fixed_effects_design(
                    generator,
                    output_path,
                    [d.path for d in selection.directories],
                    selection.common_contrast_count,
                    z,
                    p,
                    label=selection.key,
                )
                registry.register(design)
                results["designs"].append(design)
                logger.info(f"\nGenerated FEAT fixed-effects design file at:\n- {self._rel(design.output_path)}")

            self._run_designs(
                registry,
                results,
                "Running Fixed Effects",
                "\nPress Enter/Return to confirm and proceed with second-level fixed effects "
                "analysis, or Ctrl+C to cancel and restart.",
            )

        if not results["cancelled"]:
            logger.info("\n=== All processing is complete. Please check the output directories for results. ===\n")
        return results


class MixedEffectsPipeline(_Pipeline):
    """
    Third-level mixed-effects (FLAME 1) analysis across subjects.

    Parameters
    ----------
    config : Config, str, Path, or dict, optional
        Configuration (Config object, path to config file, or dict).
    prompter : Prompter, optional
        Source of interactive answers.
    scanner : DirectoryScanner, optional
        Directory scanner.
    runner : FeatRunner, optional
        Engine runner; defaults to the ``mixed_effects.on_engine_error`` policy.
    analysis_dir : str or Path, optional
        Level-2 analysis directory; asked for when omitted.
    session : str, optional
        Session to analyse; asked for when omitted.
    log_dir : str or Path, optional
        Where to write the timestamped log file.
    """

    script_name = "third_level_analysis"
    section = "mixed_effects"
    template_kind = "mixed_effects"

    def __init__(self, *args, session: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.session = session

    def select_analysis_dir(self) -> Path:
        level2_dir = self.config.resolve_path("paths.level2_dir")
        candidates = self.scanner.analysis_dirs(level2_dir, level=LEVEL_HIGHER)
        if not candidates and self.analysis_dir is None:
            raise FileNotFoundError(
                "No available directories for higher-level analysis found. Please ensure that "
                "second-level fixed-effects analysis has been completed and the directories "
                "exist in the specified path."
            )
        if self.analysis_dir is None:
            logger.info("\n---- Higher level FEAT directories ----")
            logger.info("Select analysis directory containing 3D cope images\n")
        analysis_dir = self._choose_analysis_dir(candidates, f"No analysis directories found in {level2_dir}.")
        logger.info(f"\nYou have selected the following analysis directory:\n{analysis_dir}")
        return analysis_dir

    def select_session(self, analysis_dir: Path) -> str:
        if self.session is not None:
            return self.session
        sessions = self.scanner.session_names(analysis_dir)
        if not sessions:
            raise FileNotFoundError(f"No sessions found in {analysis_dir}.")
        if not self.interactive:
            if len(sessions) == 1:
                return sessions[0]
            raise ValueError("Several sessions found; choose one with --session")
        logger.info("\n--- Select session ---")
        logger.info("\nSelect available sessions:\n")
        session = self.prompter.choose(sessions)
        logger.info(f"\nYou have selected session: {session}")
        return session

    def initial_state(self, analysis_dir: Path, session: str) -> SelectionState:
        entries = self.scanner.discover_higher_level(analysis_dir, session)
        if not entries:
            raise FileNotFoundError(f"No subject directories found in session {session}.")
        return SelectionState(tuple(entries))

    def display(self, state: SelectionState, session: str) -> None:
        """Print the whole current selection."""
        logger.info("\n=== Confirm Your Selections for Mixed Effects Analysis ===")
        logger.info(f"Session: {session}\n")
        for entry in state.sorted_entries():
            logger.info(f"Subject: {entry.subject} | Session: {entry.session}")
            logger.info("----------------------------------------")
            directories = entry.sorted_directories()
            if directories and directories[0].level == LEVEL_LOWER:
                logger.info("Selected Feat Directory:")
            else:
                logger.info("Higher-level Feat Directory:")
            for directory in directories:
                logger.info(f"  - {self._rel(directory.path)}")
            logger.info("")
        logger.info("============================================\n")

    def modify(self, state: SelectionState, session: str) -> SelectionState:
        """Show the selection and apply add/exclude commands until confirmed."""
        if not self.interactive:
            self.display(state, session)
            return state

        while True:
            self.display(state, session)
            logger.info("Options:")
            logger.info("  • To exclude a single subject, type -subject (e.g., -sub-01). Only one subject can be excluded at a time.")
            logger.info("  • To add or replace directories, type add.")
            logger.info("  • Press Enter/Return to confirm and proceed with third-level mixed effects analysis if the selections are final.\n")

            answer = self.prompter.ask("> ").lower()
            try:
                command, subject = parse_modify_command(answer)
                if command == CONFIRM:
                    return state
                if command == REMOVE:
                    state = state.exclude_subject(subject)
                    logger.info(f"\nSubject {subject} has been excluded.")
                elif command == ADD:
                    entry = self.add_entry()
                    if entry is not None:
                        state = state.add_or_replace(entry)
            except SelectionError as e:
                logger.error(f"\nError: {e}")

    def add_entry(self) -> Optional[SubjectEntry]:
        """Walk through choosing one directory for one subject; None when cancelled."""
        logger.info("\nSelect input options:\n")
        level = self.prompter.choose(
            [LEVEL_LOWER, LEVEL_HIGHER, None],
            [
                "Inputs are lower-level FEAT directories",
                "Inputs are higher-level .gfeat directories",
                "Cancel",
            ],
        )
        if level is None:
            return None

        if level == LEVEL_LOWER:
            candidates = self.scanner.analysis_dirs(self.config.resolve_path("paths.level1_dir"), level=LEVEL_LOWER)
        else:
            candidates = self.scanner.analysis_dirs(self.config.resolve_path("paths.level2_dir"), level=LEVEL_HIGHER)
        if not candidates:
            logger.info("No analysis directories found.")
            return None

        logger.info("\nSelect analysis directory\n")
        analysis_dir = self.prompter.choose(candidates, [self._rel(c) for c in candidates])
        logger.info(f"\nYou have selected the following analysis directory:\n{analysis_dir}")

        sessions = self.scanner.session_names(analysis_dir)
        if not sessions:
            logger.info(f"No sessions found in {analysis_dir}.")
            return None
        logger.info("\nSelect available sessions:\n")
        session = self.prompter.choose(sessions)
        logger.info(f"\nYou have selected session: {session}")

        subjects = [d for d in self.scanner.subject_dirs(analysis_dir) if (d / session).is_dir()]
        if not subjects:
            logger.info(f"No subjects found in session {session}.")
            return None
        logger.info("\nSelect subject to add/replace:\n")
        subject_dir = self.prompter.choose(subjects, [d.name for d in subjects])
        subject = subject_dir.name

        logger.info(f"\nListing directories for {subject} in session {session}...")
        if level == LEVEL_LOWER:
            directories = self.scanner.feat_dirs(subject_dir / session, subject, session)
            if not directories:
                logger.info(f"  - No feat directories found for {subject} in session {session}.")
                return None
            logger.info("\nFeat Directories:\n")
        else:
            directories = self.scanner.gfeat_dirs(subject_dir / session, subject, session)
            if not directories:
                logger.info(f"  - No .gfeat directories found for {subject} in session {session}.")
                return None
            logger.info("\ngfeat Directories:\n")

        directory = self.prompter.choose(directories, [self._rel(d.path) for d in directories])
        return SubjectEntry(subject, session, (directory,))

    def output_dir(self, task: Optional[str], descriptor: Optional[str]) -> Path:
        """``<level3>/[task-<task>_]desc-[<desc>_]group``"""
        name = f"desc-{descriptor}_group" if descriptor else "desc-group"
        if task:
            name = f"task-{task}_{name}"
        return self.config.resolve_path("paths.level3_dir") / name

    def _display_cope_files(self, state: SelectionState, cope_files: Dict[int, List[Path]]) -> None:
        directories = state.directories()
        logger.info("\n=== Final Selected Directories ===\n")
        for index, files in cope_files.items():
            logger.info(f"=== Cope image: cope{index} ===")
            for directory, cope_file in zip(directories, files):
                logger.info(f"\n--- Subject: {directory.subject} | Session: {directory.session} ---")
                logger.info("Cope file:")
                logger.info(f"  - {self._rel(cope_file)}")
            logger.info("")

    def run(self) -> Dict[str, Any]:
        """
        Run the complete third-level flow.

        Returns
        -------
        dict
            ``analysis_dir``, ``session``, ``state``, ``intersection``,
            ``output_dir``, ``designs``, ``completed``/``failed`` (cope
            labels), ``skipped`` (cope labels with existing outputs) and
            ``cancelled``.
        """
        generator = self._design_generator()
        self._check_engine()
        logger.info("\n=== Third Level Analysis: Mixed Effects Flame 1 ===")

        analysis_dir = self.select_analysis_dir()
        session = self.select_session(analysis_dir)
        state = self.modify(self.initial_state(analysis_dir, session), session)

        min_inputs = int(self.config.get("mixed_effects.min_inputs"))
        if state.total_directories < min_inputs:
            raise SelectionError(
                f"At least {min_inputs} directories are required for mixed effects analysis. "
                f"You have selected only {state.total_directories} directories."
            )

        directories = state.directories()
        intersection = intersect_contrasts(directories)
        cope_files = resolve_cope_files(directories, intersection)
        self._display_cope_files(state, cope_files)

        z, p = self._thresholds("mixed effects analysis flame 1")

        if self.interactive:
            logger.info("\n=== Customize Output Folder Name (Optional) ===\n")
        task = self._ask_name("mixed_effects.task_name", "Task name (leave blank for no task): ")
        descriptor = self._ask_name(
            "mixed_effects.descriptor",
            "Descriptor (e.g., postICA or leave blank for default): ",
        )
        output_dir = self.output_dir(task, descriptor)
        logger.info(f"\nOutput directory will be set to: {output_dir}")

        results: Dict[str, Any] = {
            "analysis_dir": analysis_dir,
            "session": session,
            "state": state,
            "intersection": intersection,
            "output_dir": output_dir,
            "designs": [],
            "completed": [],
            "failed": [],
            "skipped": [],
            "cancelled": False,
        }

        with ArtifactRegistry() as registry:
            registry.register_directory(output_dir)
            for index, files in cope_files.items():
                logger.info(f"\n--- Processing cope {index} ---")
                gfeat = output_dir / f"cope{index}.gfeat"
                if gfeat.exists():
                    logger.info(f"Output directory already exists at:\n  - {self._rel(gfeat)}\n\nSkipping...")
                    results["skipped"].append(f"cope{index}")
                    continue
                design: GeneratedConfig = generate_mixed_effects_design(
                    generator, output_dir, index, files, z, p
                )
                registry.register(design)
                results["designs"].append(design)
                logger.info(f"Generated design file:\n  - {self._rel(design.output_path)}")

            if not len(registry):
                logger.info("\n=== No new analyses to run. All cope outputs already exist. ===\n")
                return results

            self._run_designs(
                registry,
                results,
                "Running Mixed Effects",
                "\nPress Enter/Return to confirm and proceed with third-level mixed effects "
                "analysis, or Ctrl+C to cancel.",
            )

        if not results["cancelled"]:
            logger.info("\n=== Third-level analysis completed ===\n")
        return results


def generate_design(
    config: Optional[Union[Config, str, Path, Dict]],
    output_path: Union[str, Path],
    inputs: Sequence[Union[str, Path]],
    cope_count: Optional[int] = None,
    z_threshold: Optional[float] = None,
    cluster_p_threshold: Optional[float] = None,
    scanner: Optional[DirectoryScanner] = None,
) -> GeneratedConfig:
    """
    Write one fixed-effects design without any interaction.

    Parameters
    ----------
    config : Config, str, Path, or dict, optional
        Configuration providing the template and the standard image.
    output_path : str or Path
        Design output directory; FEAT writes ``<output_path>.gfeat``.
    inputs : sequence of str or Path
        Lower-level FEAT directories, in input order.
    cope_count : int, optional
        Number of lower-level copes. When omitted, the inputs are reconciled
        and only the runs sharing the majority count are used.
    z_threshold, cluster_p_threshold : float, optional
        Default to the configured values, then to 2.3 and 0.05.
    """
    config = _as_config(config)
    if not inputs:
        raise ValueError("At least one input directory is required")

    generator = DesignGenerator(
        config.template_path("fixed_effects"),
        config.resolve_path("paths.standard_image"),
    )
    scanner = scanner or DirectoryScanner(
        config.get("naming.subject_patterns"),
        config.get("naming.session_patterns"),
    )

    feat_dirs = [Path(p) for p in inputs]
    missing = [str(p) for p in feat_dirs if not p.is_dir()]
    if missing:
        raise FileNotFoundError("Input directories not found:\n" + "\n".join(f"  - {m}" for m in missing))

    if cope_count is None:
        candidates = [scanner.make_result(p, p.parent.parent.parent.name, p.parent.parent.name, LEVEL_LOWER) for p in feat_dirs]
        group = reconcile_contrast_counts(candidates)
        if group.is_excluded:
            raise ValueError(" ".join(group.warnings) or "Could not determine a common cope count")
        for warning in group.warnings:
            logger.warning(f"[Warning] {warning}")
        feat_dirs = [d.path for d in group.valid]
        cope_count = group.common_contrast_count

    if z_threshold is None:
        z_threshold = config.get("thresholds.z_threshold") or DEFAULT_Z_THRESHOLD
    if cluster_p_threshold is None:
        cluster_p_threshold = config.get("thresholds.cluster_p_threshold") or DEFAULT_CLUSTER_P_THRESHOLD

    design = generate_fixed_effects_design(
        generator, output_path, feat_dirs, int(cope_count), z_threshold, cluster_p_threshold
    )
    logger.info(f"Generated FEAT fixed-effects design file at:\n- {design.output_path}")
    return design
