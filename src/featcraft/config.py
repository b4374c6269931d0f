"""
Configuration handling for FeatCraft.

This module handles:
- Configuration file parsing (YAML/JSON)
- Configuration validation
- Default values
- Resolution of project-relative paths
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)


# Default configuration values
DEFAULT_CONFIG = {
    # Project root; relative paths below are resolved against it
    "base_dir": None,

    # Project layout
    "paths": {
        "level1_dir": "derivatives/fsl/level-1",
        "level2_dir": "derivatives/fsl/level-2",
        "level3_dir": "derivatives/fsl/level-3",
        "design_dir": "code/design_files",
        "log_dir": "code/logs",
        "standard_image": "derivatives/templates/MNI152_T1_2mm_brain.nii.gz",
    },

    # Design templates (relative to paths.design_dir unless absolute)
    "templates": {
        "fixed_effects": "fixed-effects_design.fsf",
        "mixed_effects": "mixed-effects_design.fsf",
    },

    # Accepted directory names
    "naming": {
        "subject_patterns": ["sub-*", "subject-*", "pilot-*", "subj-*", "subjpilot-*"],
        "session_patterns": [
            "ses-*", "session-*", "ses_*", "session_*", "ses*", "session*",
            "baseline", "endpoint", "ses-001", "ses-002",
        ],
        "analysis_pattern": "*analysis*",  # level-1 analyses offered for fixed effects
    },

    # Cluster thresholding (null = prompt, defaults used on empty answers)
    "thresholds": {
        "z_threshold": None,
        "cluster_p_threshold": None,
    },

    # Second-level fixed effects
    "fixed_effects": {
        "min_runs": 2,
        "task_name": None,
        "on_engine_error": "abort",  # "abort" or "continue"
    },

    # Third-level mixed effects (FLAME 1)
    "mixed_effects": {
        "min_inputs": 3,
        "task_name": None,
        "descriptor": None,
        "on_engine_error": "continue",
    },

    # External engine
    "engine": {
        "command": "feat",
    },

    "interactive": True,
    "verbose": 1,
}

DEFAULT_Z_THRESHOLD = 2.3
DEFAULT_CLUSTER_P_THRESHOLD = 0.05

ON_ENGINE_ERROR_CHOICES = ["abort", "continue"]


class Config:
    """
    Configuration manager for FeatCraft.

    Parameters
    ----------
    config_file : str or Path, optional
        Path to configuration file (YAML or JSON).
    **kwargs
        Additional configuration options to override defaults.

    Attributes
    ----------
    data : dict
        Configuration dictionary.
    """

    def __init__(
        self,
        config_file: Optional[Union[str, Path]] = None,
        **kwargs,
    ):
        # Start with defaults
        self.data = copy.deepcopy(DEFAULT_CONFIG)

        # Load from file if provided
        if config_file is not None:
            self.load_from_file(config_file)

        # Override with kwargs
        self._update_nested(self.data, kwargs)

        self.validate()

    def _update_nested(self, base: Dict, updates: Dict) -> None:
        """Update nested dictionary with another dictionary."""
        for key, value in updates.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._update_nested(base[key], value)
            else:
                base[key] = value

    def update(self, updates: Dict) -> None:
        """Merge ``updates`` into the configuration and re-validate."""
        self._update_nested(self.data, updates)
        self.validate()

    def load_from_file(self, filepath: Union[str, Path]) -> None:
        """
        Load configuration from a YAML or JSON file.

        Parameters
        ----------
        filepath : str or Path
            Path to configuration file.
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"Configuration file not found: {filepath}")

        logger.info(f"Loading configuration from: {filepath}")

        with open(filepath, "r") as f:
            if filepath.suffix in [".yaml", ".yml"]:
                file_config = yaml.safe_load(f)
            elif filepath.suffix == ".json":
                file_config = json.load(f)
            else:
                # Try YAML first, then JSON
                try:
                    file_config = yaml.safe_load(f)
                except yaml.YAMLError:
                    f.seek(0)
                    file_config = json.load(f)

        if file_config is not None:
            self._update_nested(self.data, file_config)

    def save_to_file(self, filepath: Union[str, Path]) -> None:
        """
        Save configuration to a YAML or JSON file.

        Parameters
        ----------
        filepath : str or Path
            Path to output file.
        """
        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with open(filepath, "w") as f:
            if filepath.suffix in [".yaml", ".yml"]:
                yaml.safe_dump(self.data, f, default_flow_style=False, sort_keys=False)
            else:
                json.dump(self.data, f, indent=2)

        logger.info(f"Configuration saved to: {filepath}")

    def validate(self) -> None:
        """
        Validate the configuration.

        Raises
        ------
        ValueError
            If configuration is invalid.
        """
        errors = []

        thresholds = self.data["thresholds"]
        z = thresholds.get("z_threshold")
        if z is not None and not (isinstance(z, (int, float)) and z > 0):
            errors.append(f"z_threshold must be a positive number, got {z}")
        p = thresholds.get("cluster_p_threshold")
        if p is not None and not (isinstance(p, (int, float)) and 0 < p < 1):
            errors.append(f"cluster_p_threshold must be between 0 and 1, got {p}")

        for section in ("fixed_effects", "mixed_effects"):
            policy = self.data[section].get("on_engine_error")
            if policy not in ON_ENGINE_ERROR_CHOICES:
                errors.append(
                    f"{section}.on_engine_error must be one of {ON_ENGINE_ERROR_CHOICES}, got {policy}"
                )

        if int(self.data["fixed_effects"]["min_runs"]) < 1:
            errors.append("fixed_effects.min_runs must be at least 1")
        if int(self.data["mixed_effects"]["min_inputs"]) < 1:
            errors.append("mixed_effects.min_inputs must be at least 1")

        for key in ("subject_patterns", "session_patterns"):
            if not self.data["naming"].get(key):
                errors.append(f"naming.{key} must list at least one pattern")

        if not self.data["engine"].get("command"):
            errors.append("engine.command must not be empty")

        if errors:
            raise ValueError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value by key (supports dot notation).

        Parameters
        ----------
        key : str
            Configuration key (e.g., "thresholds.z_threshold").
        default : any
            Default value if key not found.

        Returns
        -------
        any
            Configuration value.
        """
        keys = key.split(".")
        value = self.data

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value by key (supports dot notation).

        Parameters
        ----------
        key : str
            Configuration key (e.g., "fixed_effects.task_name").
        value : any
            Value to set.
        """
        keys = key.split(".")
        data = self.data

        for k in keys[:-1]:
            if k not in data:
                data[k] = {}
            data = data[k]

        data[keys[-1]] = value

    def __getitem__(self, key: str) -> Any:
        """Allow dictionary-style access."""
        return self.data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        """Allow dictionary-style assignment."""
        self.data[key] = value

    def __contains__(self, key: str) -> bool:
        """Check if key exists."""
        return key in self.data

    def to_dict(self) -> Dict:
        """Return configuration as dictionary."""
        return copy.deepcopy(self.data)

    @property
    def base_dir(self) -> Path:
        base = self.data.get("base_dir")
        return Path(base) if base else Path.cwd()

    def resolve_path(self, key: str) -> Path:
        """
        Resolve a path setting against ``base_dir``.

        Parameters
        ----------
        key : str
            Dot-notation key of a path setting (e.g. "paths.level1_dir").
        """
        value = self.get(key)
        if value is None:
            raise KeyError(f"Configuration has no path for '{key}'")
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    def template_path(self, kind: str) -> Path:
        """Resolve ``templates.<kind>`` inside ``paths.design_dir`` unless absolute."""
        name = Path(self.get(f"templates.{kind}")).expanduser()
        if name.is_absolute():
            return name
        return self.resolve_path("paths.design_dir") / name

    def summary(self) -> str:
        """
        Get a text summary of the configuration.

        Returns
        -------
        str
            Configuration summary.
        """
        lines = ["Configuration Summary", "=" * 40]

        lines.append(f"\nBase directory: {self.base_dir}")

        lines.append("\nPaths:")
        for k, v in self.data["paths"].items():
            lines.append(f"  {k}: {v}")

        lines.append("\nThresholds:")
        for k, v in self.data["thresholds"].items():
            lines.append(f"  {k}: {v if v is not None else 'prompt'}")

        lines.append("\nFixed Effects:")
        lines.append(f"  Minimum runs: {self.data['fixed_effects']['min_runs']}")
        lines.append(f"  On engine error: {self.data['fixed_effects']['on_engine_error']}")

        lines.append("\nMixed Effects:")
        lines.append(f"  Minimum inputs: {self.data['mixed_effects']['min_inputs']}")
        lines.append(f"  On engine error: {self.data['mixed_effects']['on_engine_error']}")

        lines.append(f"\nEngine: {self.data['engine']['command']}")

        return "\n".join(lines)


def load_config(
    config_file: Optional[Union[str, Path]] = None,
    **kwargs,
) -> Config:
    """
    Load configuration from file and/or keyword arguments.

    Parameters
    ----------
    config_file : str or Path, optional
        Path to configuration file.
    **kwargs
        Additional configuration options.

    Returns
    -------
    Config
        Configuration object.
    """
    return Config(config_file=config_file, **kwargs)


def create_default_config(output_path: Union[str, Path]) -> Path:
    """
    Create a documented default configuration file.

    Parameters
    ----------
    output_path : str or Path
        Path for the output configuration file.

    Returns
    -------
    Path
        Path to created configuration file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    template = """# ===============================================================================
# FeatCraft Configuration File
# ===============================================================================
# Settings for second-level (fixed effects) and third-level (mixed effects)
# FEAT analyses. CLI arguments take precedence over values in this file.
#
# USAGE:
#   featcraft /path/to/project second-level --config this_file.yaml
#   featcraft /path/to/project third-level --config this_file.yaml
# ===============================================================================

# -------------------------------------------------------------------------------
# PROJECT ROOT
# -------------------------------------------------------------------------------
# Relative paths below are resolved against this directory.
# CLI equivalent: BASE_DIR (positional argument)
base_dir: null

# -------------------------------------------------------------------------------
# PATHS
# -------------------------------------------------------------------------------
paths:
  # First-level analyses: <level1_dir>/<analysis>/<subject>/<session>/func/*.feat
  level1_dir: derivatives/fsl/level-1

  # Second-level outputs: <level2_dir>/<analysis>/<subject>/<session>/*.gfeat
  level2_dir: derivatives/fsl/level-2

  # Third-level outputs: <level3_dir>/[task-<task>_]desc-[<desc>_]group/cope<N>.gfeat
  level3_dir: derivatives/fsl/level-3

  # Directory holding the .fsf design templates
  # Create the default templates with: featcraft --init-templates <dir>
  design_dir: code/design_files

  # Timestamped log files are written here
  log_dir: code/logs

  # Standard-space brain image referenced by the designs
  # CLI equivalent: --standard-image
  standard_image: derivatives/templates/MNI152_T1_2mm_brain.nii.gz

# -------------------------------------------------------------------------------
# DESIGN TEMPLATES
# -------------------------------------------------------------------------------
# File names inside paths.design_dir, or absolute paths.
# CLI equivalent: --template
templates:
  fixed_effects: fixed-effects_design.fsf
  mixed_effects: mixed-effects_design.fsf

# -------------------------------------------------------------------------------
# NAMING
# -------------------------------------------------------------------------------
naming:
  # Directory names accepted as subjects
  subject_patterns: ["sub-*", "subject-*", "pilot-*", "subj-*", "subjpilot-*"]

  # Directory names accepted as sessions
  session_patterns: ["ses-*", "session-*", "ses_*", "session_*", "ses*", "session*",
                     "baseline", "endpoint", "ses-001", "ses-002"]

  # Level-1 analysis directories offered for fixed effects
  analysis_pattern: "*analysis*"

# -------------------------------------------------------------------------------
# THRESHOLDS
# -------------------------------------------------------------------------------
# Cluster thresholding. null = ask interactively (Enter keeps 2.3 / 0.05).
# CLI equivalent: --z-threshold / --cluster-p-threshold
thresholds:
  z_threshold: null
  cluster_p_threshold: null

# -------------------------------------------------------------------------------
# SECOND LEVEL (FIXED EFFECTS)
# -------------------------------------------------------------------------------
fixed_effects:
  # Subject-sessions with fewer selected runs are skipped
  min_runs: 2

  # Adds _task-<name> to the output names (CLI: --task)
  task_name: null

  # What to do when FEAT fails on a design: abort | continue
  on_engine_error: abort

# -------------------------------------------------------------------------------
# THIRD LEVEL (MIXED EFFECTS, FLAME 1)
# -------------------------------------------------------------------------------
mixed_effects:
  # Minimum number of selected directories
  min_inputs: 3

  # Output folder naming (CLI: --task / --desc)
  task_name: null
  descriptor: null

  # What to do when FEAT fails on one cope: abort | continue
  on_engine_error: continue

# -------------------------------------------------------------------------------
# ENGINE
# -------------------------------------------------------------------------------
engine:
  # Command run with the design file as its only argument
  # CLI equivalent: --engine-command
  command: feat

# Ask questions for settings that are not given
interactive: true

# Verbosity: 0 = warnings only, 1 = normal, 2 = debug
verbose: 1
"""

    with open(output_path, 'w') as f:
        f.write(template)

    logger.info(f"Configuration file created: {output_path}")
    return output_path
