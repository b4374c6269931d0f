"""
FeatCraft: Higher-level FSL FEAT analysis orchestration.

A pip-installable Python tool that discovers first- and second-level FEAT
result directories, reconciles their contrast (cope) counts, lets the user
select subjects, sessions and runs, and generates and runs fixed-effects
(level 2) and mixed-effects (level 3) FEAT designs.
"""

__version__ = "0.1.0"
__author__ = "FeatCraft Contributors"

from featcraft.core.scanner import DirectoryScanner
from featcraft.core.reconcile import reconcile_contrast_counts
from featcraft.core.selection import SelectionState, apply_selection, parse_selection
from featcraft.core.intersect import intersect_contrasts
from featcraft.core.design import ArtifactRegistry, DesignGenerator
from featcraft.core.engine import FeatRunner
from featcraft.pipeline import FixedEffectsPipeline, MixedEffectsPipeline

__all__ = [
    "DirectoryScanner",
    "reconcile_contrast_counts",
    "SelectionState",
    "apply_selection",
    "parse_selection",
    "intersect_contrasts",
    "ArtifactRegistry",
    "DesignGenerator",
    "FeatRunner",
    "FixedEffectsPipeline",
    "MixedEffectsPipeline",
    "__version__",
]
