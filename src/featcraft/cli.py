"""
Command-line interface for FeatCraft.

This module provides the ``featcraft`` entry point for running second-level
(fixed effects) and third-level (mixed effects) FEAT analyses, and for
generating single fixed-effects designs.
"""

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional

from featcraft import __version__
from featcraft.config import Config, create_default_config
from featcraft.core.design import write_default_templates
from featcraft.pipeline import (
    FixedEffectsPipeline,
    MixedEffectsPipeline,
    Prompter,
    generate_design,
    setup_logging,
)

logger = logging.getLogger(__name__)

COMMANDS = ["second-level", "third-level", "design"]

SCRIPT_NAMES = {
    "second-level": "second_level_analysis",
    "third-level": "third_level_analysis",
    "design": "generate_fixed_effects_design",
}


class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    END = '\033[0m'


class ColoredHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Custom formatter with colored section headers."""

    def __init__(self, prog, indent_increment=2, max_help_position=40, width=100):
        super().__init__(prog, indent_increment, max_help_position, width)

    def _format_usage(self, usage, actions, groups, prefix):
        if prefix is None:
            prefix = f'{Colors.BOLD}Usage:{Colors.END} '
        return super()._format_usage(usage, actions, groups, prefix)

    def start_section(self, heading):
        if heading:
            heading = f'{Colors.BOLD}{Colors.CYAN}{heading}{Colors.END}'
        super().start_section(heading)


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""

    description = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}╔══════════════════════════════════════════════════════════════════════════════╗
    ║                     FeatCraft v{__version__:<58}║
    ║              Higher-Level FSL FEAT Analysis Orchestration                  ║
    ╚══════════════════════════════════════════════════════════════════════════════╝{Colors.END}

    {Colors.BOLD}Description:{Colors.END}
      FeatCraft discovers completed FEAT analyses in a project tree, checks that
      their runs share a consistent number of copes, lets you choose subjects,
      sessions and runs, and generates and runs higher-level FEAT designs.

    {Colors.BOLD}Commands:{Colors.END}
      • second-level   Fixed effects across the runs of each subject-session
      • third-level    Mixed effects (FLAME 1) across subjects, one design per cope
      • design         Write a single fixed-effects design from given FEAT directories

    {Colors.BOLD}Workflow:{Colors.END}
      1. Discover result directories under derivatives/fsl/level-N
      2. Reconcile cope counts across runs (strict majority)
      3. Select subjects, sessions and runs
      4. Generate designs from templates in code/design_files
      5. Confirm, then run FEAT on each design in turn
    """)

    epilog = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}
    {Colors.BOLD}EXAMPLES{Colors.END}
    {Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}

    {Colors.BOLD}Setup:{Colors.END}

      {Colors.YELLOW}# Generate default configuration and design templates{Colors.END}
      featcraft --init-config config.yaml
      featcraft --init-templates /data/project/code/design_files

    {Colors.BOLD}Second Level (Fixed Effects):{Colors.END}

      {Colors.YELLOW}# Interactive run{Colors.END}
      featcraft /data/project second-level

      {Colors.YELLOW}# Preset selection: keep runs 02 and 03 of sub-01:ses-01, drop sub-04{Colors.END}
      featcraft /data/project second-level \\
          --analysis-dir derivatives/fsl/level-1/analysis_postICA \\
          --selection 'sub-01:ses-01:02,03 -sub-04' -z 3.1 -p 0.01

      {Colors.YELLOW}# Selection starting with an exclusion: drop sub-04 only{Colors.END}
      featcraft /data/project second-level --selection=-sub-04

    {Colors.BOLD}Third Level (Mixed Effects):{Colors.END}

      {Colors.YELLOW}# Group analysis of ses-01 with a task name and descriptor{Colors.END}
      featcraft /data/project third-level --session ses-01 --task memory --desc postICA

    {Colors.BOLD}Single Design:{Colors.END}

      {Colors.YELLOW}# Write one fixed-effects design over two runs{Colors.END}
      featcraft /data/project design -o /tmp/sub-01_ses-01_desc-fixed-effects \\
          --cope-count 5 run-01.feat run-02.feat

    {Colors.BOLD}{Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}
    {Colors.BOLD}MORE INFORMATION{Colors.END}
    {Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}

      Version:        {__version__}
    """)

    parser = argparse.ArgumentParser(
        prog="featcraft",
        description=description,
        epilog=epilog,
        formatter_class=ColoredHelpFormatter,
        add_help=False,
    )

    # =========================================================================
    # POSITIONAL ARGUMENTS
    # =========================================================================
    positional = parser.add_argument_group(
        f'{Colors.BOLD}Positional Arguments{Colors.END}'
    )

    positional.add_argument(
        "base_dir",
        nargs="?",
        type=Path,
        metavar="BASE_DIR",
        help="Project root containing derivatives/ and code/ (default: config base_dir, "
             "then the current directory).",
    )

    positional.add_argument(
        "command",
        nargs="?",
        choices=COMMANDS,
        metavar="{" + ",".join(COMMANDS) + "}",
        help="Analysis to run.",
    )

    positional.add_argument(
        "inputs",
        nargs="*",
        type=Path,
        metavar="INPUTS",
        help="Lower-level FEAT directories (design command only).",
    )

    # =========================================================================
    # GENERAL OPTIONS
    # =========================================================================
    general = parser.add_argument_group(
        f'{Colors.BOLD}General Options{Colors.END}'
    )

    general.add_argument(
        "-h", "--help",
        action="help",
        default=argparse.SUPPRESS,
        help="Show this help message and exit.",
    )

    general.add_argument(
        "--version",
        action="version",
        version=f"featcraft {__version__}",
        help="Show program version and exit.",
    )

    general.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Enable verbose output (can be specified multiple times).",
    )

    general.add_argument(
        "-c", "--config",
        type=Path,
        metavar="FILE",
        help="Path to configuration file (.json, .yaml, or .yml). "
             "CLI arguments override config file settings.",
    )

    general.add_argument(
        "--init-config",
        type=Path,
        metavar="FILE",
        help="Generate a default configuration file and exit.",
    )

    general.add_argument(
        "--init-templates",
        type=Path,
        metavar="DIR",
        help="Write the default fixed- and mixed-effects design templates to DIR and exit.",
    )

    general.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask for the final confirmation before running FEAT.",
    )

    general.add_argument(
        "--no-log-file",
        action="store_true",
        help="Do not write a timestamped log file.",
    )

    # =========================================================================
    # SELECTION OPTIONS
    # =========================================================================
    selection = parser.add_argument_group(
        f'{Colors.BOLD}Selection Options{Colors.END}'
    )

    selection.add_argument(
        "--analysis-dir",
        type=Path,
        metavar="PATH",
        help="Analysis directory to use instead of choosing one interactively.",
    )

    selection.add_argument(
        "--session",
        metavar="NAME",
        help="Session for the third-level analysis (e.g., ses-01).",
    )

    selection.add_argument(
        "--selection",
        metavar="TEXT",
        help="Second-level selection, e.g. 'sub-01:ses-01:02,03 -sub-03:ses-01 -sub-04'. "
             "Use '' to include everything. A text starting with '-' "
             "(e.g. --selection -sub-04) is taken as the value.",
    )

    # =========================================================================
    # DESIGN OPTIONS
    # =========================================================================
    design = parser.add_argument_group(
        f'{Colors.BOLD}Design Options{Colors.END}'
    )

    design.add_argument(
        "-o", "--output",
        type=Path,
        metavar="PATH",
        help="Design output directory (design command only); FEAT writes PATH.gfeat.",
    )

    design.add_argument(
        "--cope-count",
        type=int,
        metavar="N",
        help="Number of lower-level copes (design command only; reconciled from INPUTS if omitted).",
    )

    design.add_argument(
        "-z", "--z-threshold",
        type=float,
        metavar="Z",
        help="Cluster-forming Z threshold (default: 2.3).",
    )

    design.add_argument(
        "-p", "--cluster-p-threshold",
        type=float,
        metavar="P",
        help="Cluster P threshold (default: 0.05).",
    )

    design.add_argument(
        "--task",
        metavar="NAME",
        help="Task name added to the output names.",
    )

    design.add_argument(
        "--desc",
        metavar="NAME",
        help="Descriptor for the third-level output folder (e.g., postICA).",
    )

    design.add_argument(
        "--standard-image",
        type=Path,
        metavar="FILE",
        help="Standard-space brain image referenced by the designs.",
    )

    design.add_argument(
        "--template",
        type=Path,
        metavar="FILE",
        help="Design template for the selected command.",
    )

    # =========================================================================
    # ENGINE OPTIONS
    # =========================================================================
    engine = parser.add_argument_group(
        f'{Colors.BOLD}Engine Options{Colors.END}'
    )

    engine.add_argument(
        "--engine-command",
        metavar="CMD",
        help="Command run on each design file (default: feat).",
    )

    engine.add_argument(
        "--on-engine-error",
        choices=["abort", "continue"],
        help="Stop at the first failed FEAT run or continue with the next design.",
    )

    return parser


def _attach_selection_values(argv: List[str]) -> List[str]:
    """
    Join ``--selection VALUE`` into ``--selection=VALUE``.

    argparse reads a value such as ``-sub-04`` as an unknown option, so the
    value following ``--selection`` is always attached to it.
    """
    joined = []
    i = 0
    while i < len(argv):
        if argv[i] == "--selection" and i + 1 < len(argv):
            joined.append(f"--selection={argv[i + 1]}")
            i += 2
            continue
        joined.append(argv[i])
        i += 1
    return joined


def _build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate command-line arguments into nested configuration overrides."""
    overrides: Dict[str, Any] = {}

    def put(key: str, value: Any) -> None:
        if value is None:
            return
        section = overrides
        keys = key.split(".")
        for k in keys[:-1]:
            section = section.setdefault(k, {})
        section[keys[-1]] = value

    section = "mixed_effects" if args.command == "third-level" else "fixed_effects"

    if args.base_dir is not None:
        put("base_dir", str(args.base_dir.expanduser().resolve()))
    put("thresholds.z_threshold", args.z_threshold)
    put("thresholds.cluster_p_threshold", args.cluster_p_threshold)
    put(f"{section}.task_name", args.task)
    put("mixed_effects.descriptor", args.desc)
    put(f"{section}.on_engine_error", args.on_engine_error)
    put("engine.command", args.engine_command)
    if args.standard_image is not None:
        put("paths.standard_image", str(args.standard_image.expanduser().resolve()))
    if args.template is not None:
        put(f"templates.{section}", str(args.template.expanduser().resolve()))
    if args.verbose:
        put("verbose", 1 + args.verbose)

    return overrides


def _print_summary(results: Dict[str, Any]) -> None:
    if results.get("cancelled"):
        print(f"\n{Colors.YELLOW}Cancelled; generated design files were removed.{Colors.END}")
        return
    print(f"\n{Colors.GREEN}✓ Analysis finished{Colors.END}")
    print(f"  Designs run: {len(results['completed'])}")
    if results["skipped"]:
        print(f"  Skipped: {', '.join(results['skipped'])}")
    if results["failed"]:
        print(f"{Colors.RED}  Failed: {', '.join(results['failed'])}{Colors.END}")


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI."""
    parser = create_parser()
    argv = sys.argv[1:] if argv is None else list(argv)
    args = parser.parse_intermixed_args(_attach_selection_values(argv))

    # Handle --init-config flag
    if args.init_config:
        output_path = Path(args.init_config)
        # Add appropriate extension if missing
        if not output_path.suffix:
            output_path = output_path.with_suffix(".yaml")
        create_default_config(output_path)
        print(f"{Colors.GREEN}✓ Configuration file created: {output_path}{Colors.END}")
        return

    if args.init_templates:
        written = write_default_templates(args.init_templates)
        print(f"{Colors.GREEN}✓ Design templates written to: {args.init_templates}{Colors.END}")
        for path in written:
            print(f"  - {path.name}")
        return

    if args.command is None:
        parser.error("a command is required: " + ", ".join(COMMANDS))

    # Load configuration, then apply CLI overrides
    try:
        cfg = Config(config_file=args.config) if args.config else Config()
        cfg.update(_build_overrides(args))
    except Exception as e:
        print(f"{Colors.RED}✗ Failed to load configuration: {e}{Colors.END}", file=sys.stderr)
        sys.exit(1)

    if not cfg.base_dir.is_dir():
        print(f"{Colors.RED}✗ Base directory not found: {cfg.base_dir}{Colors.END}", file=sys.stderr)
        sys.exit(1)

    log_dir = None if args.no_log_file else cfg.resolve_path("paths.log_dir")
    log_file = setup_logging(log_dir, SCRIPT_NAMES[args.command], cfg.get("verbose", 1))

    print(f"{Colors.BOLD}{Colors.GREEN}FeatCraft v{__version__}{Colors.END}")
    print("=" * 40)
    if log_file:
        print(f"Log file: {log_file}")

    try:
        prompter = Prompter(assume_yes=args.yes)

        if args.command == "design":
            if args.output is None or not args.inputs:
                parser.error("design requires -o/--output and at least one input directory")
            design = generate_design(
                cfg,
                args.output,
                args.inputs,
                cope_count=args.cope_count,
            )
            print(f"\n{Colors.GREEN}✓ Design written: {design.output_path}{Colors.END}")
            return

        if args.command == "second-level":
            pipeline = FixedEffectsPipeline(
                cfg,
                prompter=prompter,
                analysis_dir=args.analysis_dir,
                selection=args.selection,
            )
        else:
            pipeline = MixedEffectsPipeline(
                cfg,
                prompter=prompter,
                analysis_dir=args.analysis_dir,
                session=args.session,
            )

        _print_summary(pipeline.run())

    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted by user{Colors.END}", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        logger.exception("Analysis failed")
        print(f"\n{Colors.RED}✗ Analysis failed: {str(e)}{Colors.END}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
