"""
FEAT design (``.fsf``) generation.

This module handles:
- Literal ``@NAME@`` placeholder substitution in design templates
- Expansion of block sentinels (``@FEAT_FILES@``, ``@EVG_VALUES@``, ...)
  into one stanza per input
- Forced rewriting of ``fmri(multiple)`` and ``fmri(ncopeinputs)``
- Scoped cleanup of generated designs (:class:`ArtifactRegistry`)
"""

import logging
import re
import shutil
from collections import OrderedDict
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import nibabel as nib

from featcraft.core.models import GeneratedConfig

logger = logging.getLogger(__name__)


DATA_DIR = Path(__file__).resolve().parent.parent / "data"

FIXED_EFFECTS_TEMPLATE = "fixed-effects_design.fsf"
MIXED_EFFECTS_TEMPLATE = "mixed-effects_design.fsf"
FIXED_EFFECTS_DESIGN_NAME = "modified_fixed-effects_design.fsf"

FEAT_FILES = "@FEAT_FILES@"
EVG_VALUES = "@EVG_VALUES@"
GROUP_MEMBERSHIP = "@GROUP_MEMBERSHIP@"
COPEINPUTS = "@COPEINPUTS@"

PLACEHOLDER_PATTERN = re.compile(r"@(\w+)@")

MULTIPLE_DIRECTIVE = "set fmri(multiple) "
NCOPEINPUTS_DIRECTIVE = "set fmri(ncopeinputs) "


def escape_fsf_value(value) -> str:
    """Escape backslashes and double quotes for a quoted Tcl string."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def feat_files_block(inputs: Sequence[Union[str, Path]]) -> List[str]:
    lines = []
    for i, path in enumerate(inputs, start=1):
        lines.append(f"# 4D AVW data or FEAT directory ({i})")
        lines.append(f'set feat_files({i}) "{escape_fsf_value(path)}"')
        lines.append("")
    return lines


def evg_values_block(n_inputs: int) -> List[str]:
    lines = []
    for i in range(1, n_inputs + 1):
        lines.append(f"# Higher-level EV value for EV 1 and input {i}")
        lines.append(f"set fmri(evg{i}.1) 1")
        lines.append("")
    return lines


def group_membership_block(n_inputs: int) -> List[str]:
    lines = []
    for i in range(1, n_inputs + 1):
        lines.append(f"# Group membership for input {i}")
        lines.append(f"set fmri(groupmem.{i}) 1")
        lines.append("")
    return lines


def cope_inputs_block(cope_count: int) -> List[str]:
    lines = []
    for j in range(1, cope_count + 1):
        lines.append(f"# Use lower-level cope {j} for higher-level analysis")
        lines.append(f"set fmri(copeinput.{j}) 1")
        lines.append("")
    return lines


def default_template(name: str) -> Path:
    """Path of a design template shipped with the package."""
    return DATA_DIR / name


def write_default_templates(output_dir: Union[str, Path], overwrite: bool = False) -> List[Path]:
    """
    Copy the packaged fixed- and mixed-effects templates into ``output_dir``.

    Existing files are left alone unless ``overwrite`` is set.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name in (FIXED_EFFECTS_TEMPLATE, MIXED_EFFECTS_TEMPLATE):
        target = output_dir / name
        if target.exists() and not overwrite:
            logger.info(f"Template already exists, keeping it: {target}")
            continue
        shutil.copyfile(default_template(name), target)
        written.append(target)
        logger.info(f"Template written: {target}")
    return written


class DesignGenerator:
    """
    Materialise FEAT designs from a template.

    Parameters
    ----------
    template_path : str or Path
        Design template with ``@NAME@`` placeholders and block sentinels.
    standard_image : str or Path
        Standard-space brain image referenced by the designs.
    check_image : bool
        Whether to open the standard image header with nibabel.

    Raises
    ------
    FileNotFoundError
        If the template or the standard image is missing.
    ValueError
        If the standard image cannot be read as a NIfTI image.
    """

    def __init__(
        self,
        template_path: Union[str, Path],
        standard_image: Union[str, Path],
        check_image: bool = True,
    ):
        self.template_path = Path(template_path)
        self.standard_image = Path(standard_image)
        self._validate(check_image)

    def _validate(self, check_image: bool) -> None:
        if not self.template_path.is_file():
            raise FileNotFoundError(f"Design template not found: {self.template_path}")
        if not self.standard_image.is_file():
            raise FileNotFoundError(f"Standard-space template image not found: {self.standard_image}")
        if check_image:
            try:
                img = nib.load(str(self.standard_image))
            except Exception as e:
                raise ValueError(
                    f"Standard-space template image could not be read: {self.standard_image} ({e})"
                ) from e
            logger.debug(f"Standard image {self.standard_image.name} shape: {img.shape}")

    def render(
        self,
        substitutions: Mapping[str, object],
        blocks: Mapping[str, Sequence[str]],
        n_inputs: int,
        contrast_count: Optional[int] = None,
    ) -> str:
        """
        Render the template to text.

        Parameters
        ----------
        substitutions : mapping
            Placeholder name (without ``@``) -> value. Values are escaped for
            quoted strings and inserted literally.
        blocks : mapping
            Sentinel line (e.g. ``"@FEAT_FILES@"``) -> replacement lines.
            Blocks whose sentinel is absent from the template are appended.
        n_inputs : int
            Written to ``set fmri(multiple)`` whatever the template says.
        contrast_count : int, optional
            Written to ``set fmri(ncopeinputs)`` when given.
        """
        output = []
        used = set()
        escaped = {name: escape_fsf_value(value) for name, value in substitutions.items()}

        def substitute(match):
            return escaped.get(match.group(1), match.group(0))

        with open(self.template_path, "r") as f:
            template_lines = f.read().splitlines()

        for line in template_lines:
            # One pass per line: substituted values are never rescanned
            line = PLACEHOLDER_PATTERN.sub(substitute, line)

            stripped = line.strip()
            if stripped.startswith(MULTIPLE_DIRECTIVE):
                output.append(f"{MULTIPLE_DIRECTIVE}{n_inputs}")
            elif contrast_count is not None and stripped.startswith(NCOPEINPUTS_DIRECTIVE):
                output.append(f"{NCOPEINPUTS_DIRECTIVE}{contrast_count}")
            elif stripped in blocks:
                output.extend(blocks[stripped])
                used.add(stripped)
            else:
                output.append(line)

        for sentinel, lines in blocks.items():
            if sentinel not in used:
                output.extend(lines)

        return "\n".join(output) + "\n"

    def write(
        self,
        output_path: Union[str, Path],
        substitutions: Mapping[str, object],
        blocks: Mapping[str, Sequence[str]],
        n_inputs: int,
        contrast_count: Optional[int] = None,
        cleanup_path: Optional[Union[str, Path]] = None,
        engine_output: Optional[Union[str, Path]] = None,
        label: str = "",
    ) -> GeneratedConfig:
        """Render the template and write it to a new file at ``output_path``."""
        output_path = Path(output_path)
        if output_path.resolve() == self.template_path.resolve():
            raise ValueError(f"Refusing to overwrite the design template: {self.template_path}")

        text = self.render(substitutions, blocks, n_inputs, contrast_count)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(text)

        logger.debug(f"Design written: {output_path}")
        return GeneratedConfig(
            template_path=self.template_path,
            output_path=output_path,
            substitutions={k: str(v) for k, v in substitutions.items()},
            multi_value_blocks=tuple((k, tuple(v)) for k, v in blocks.items()),
            cleanup_path=Path(cleanup_path) if cleanup_path is not None else None,
            engine_output=Path(engine_output) if engine_output is not None else None,
            label=label,
        )


def generate_fixed_effects_design(
    generator: DesignGenerator,
    output_path: Union[str, Path],
    feat_dirs: Sequence[Union[str, Path]],
    cope_count: int,
    z_threshold: float,
    cluster_p_threshold: float,
    label: str = "",
) -> GeneratedConfig:
    """
    Write a second-level fixed-effects design over lower-level FEAT directories.

    The design goes to ``<output_path>/modified_fixed-effects_design.fsf``;
    FEAT writes its results to ``<output_path>.gfeat``. The whole
    ``<output_path>`` directory is the cleanup target.
    """
    output_path = Path(output_path)
    n_inputs = len(feat_dirs)

    substitutions = OrderedDict([
        ("OUTPUT_DIR", output_path),
        ("TEMPLATE", generator.standard_image),
        ("STANDARD_IMAGE", generator.standard_image),
        ("NPTS", n_inputs),
        ("NUM_INPUTS", n_inputs),
        ("COPE_COUNT", cope_count),
        ("Z_THRESHOLD", z_threshold),
        ("CLUSTER_P_THRESHOLD", cluster_p_threshold),
    ])
    blocks = OrderedDict([
        (FEAT_FILES, feat_files_block(feat_dirs)),
        (EVG_VALUES, evg_values_block(n_inputs)),
        (GROUP_MEMBERSHIP, group_membership_block(n_inputs)),
        (COPEINPUTS, cope_inputs_block(cope_count)),
    ])

    return generator.write(
        output_path / FIXED_EFFECTS_DESIGN_NAME,
        substitutions,
        blocks,
        n_inputs=n_inputs,
        contrast_count=cope_count,
        cleanup_path=output_path,
        engine_output=output_path.with_name(output_path.name + ".gfeat"),
        label=label or output_path.name,
    )


def generate_mixed_effects_design(
    generator: DesignGenerator,
    output_dir: Union[str, Path],
    cope_index: int,
    cope_files: Sequence[Union[str, Path]],
    z_threshold: float,
    cluster_p_threshold: float,
) -> GeneratedConfig:
    """
    Write a third-level mixed-effects (FLAME 1) design for one contrast.

    The design goes to ``<output_dir>/cope<N>_design.fsf`` and FEAT writes to
    ``<output_dir>/cope<N>.gfeat``. Only the design file is the cleanup target.
    """
    output_dir = Path(output_dir)
    cope_output_dir = output_dir / f"cope{cope_index}"
    n_inputs = len(cope_files)

    substitutions = OrderedDict([
        ("OUTPUT_DIR", cope_output_dir),
        ("COPE_OUTPUT_DIR", cope_output_dir),
        ("TEMPLATE", generator.standard_image),
        ("STANDARD_IMAGE", generator.standard_image),
        ("NPTS", n_inputs),
        ("NUM_INPUTS", n_inputs),
        ("Z_THRESHOLD", z_threshold),
        ("CLUSTER_P_THRESHOLD", cluster_p_threshold),
    ])
    blocks = OrderedDict([
        (FEAT_FILES, feat_files_block(cope_files)),
        (EVG_VALUES, evg_values_block(n_inputs)),
        (GROUP_MEMBERSHIP, group_membership_block(n_inputs)),
    ])

    design_file = output_dir / f"cope{cope_index}_design.fsf"
    return generator.write(
        design_file,
        substitutions,
        blocks,
        n_inputs=n_inputs,
        cleanup_path=design_file,
        engine_output=cope_output_dir.with_name(cope_output_dir.name + ".gfeat"),
        label=f"cope{cope_index}",
    )


class ArtifactRegistry:
    """
    Track generated designs and remove them on every exit path.

    Use as a context manager around design generation, confirmation and
    engine runs. Leaving the block, normally or through an exception such
    as ``KeyboardInterrupt``, removes every design still registered.
    """

    def __init__(self):
        self._artifacts: Dict[Path, GeneratedConfig] = OrderedDict()
        self._directories: List[Path] = []

    def __enter__(self) -> "ArtifactRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and issubclass(exc_type, KeyboardInterrupt) and self._artifacts:
            logger.warning("Process interrupted by user. Removing generated design files...")
        self.cleanup()
        return False

    def __len__(self) -> int:
        return len(self._artifacts)

    @property
    def artifacts(self) -> List[GeneratedConfig]:
        return list(self._artifacts.values())

    def register(self, config: GeneratedConfig) -> GeneratedConfig:
        self._artifacts[config.removable_path] = config
        return config

    def release(self, config: GeneratedConfig) -> None:
        """Remove one design now and stop tracking it."""
        self._artifacts.pop(config.removable_path, None)
        self._remove(config.removable_path)

    def register_directory(self, path: Union[str, Path]) -> bool:
        """
        Track an output directory that does not exist yet.

        It is removed on cleanup if it is still empty then. Returns False, and
        tracks nothing, when the directory already exists.
        """
        path = Path(path)
        if path.exists():
            return False
        self._directories.append(path)
        return True

    def cleanup(self) -> None:
        while self._artifacts:
            path, _ = self._artifacts.popitem(last=False)
            self._remove(path)
        while self._directories:
            path = self._directories.pop()
            if path.is_dir() and not any(path.iterdir()):
                path.rmdir()
                logger.info(f"Removed empty output directory:\n- {path}")

    @staticmethod
    def _remove(path: Path) -> None:
        if path.is_dir():
            shutil.rmtree(path)
            logger.info(f"Removed temporary design directory:\n- {path}")
        elif path.exists():
            path.unlink()
            logger.info(f"Removed temporary design file:\n- {path}")
