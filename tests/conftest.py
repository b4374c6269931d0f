"""Pytest configuration and shared fixtures."""

import logging
import shlex
import sys
import tempfile
import textwrap
from pathlib import Path

import nibabel as nib
import numpy as np
import pytest

from featcraft.config import Config
from featcraft.core.design import write_default_templates


FAKE_ENGINE = textwrap.dedent("""
    import shutil
    import sys
    from pathlib import Path

    capture = Path(sys.argv[1])
    design = Path(sys.argv[-1])
    exit_code = int(sys.argv[2]) if len(sys.argv) == 4 else 0

    capture.mkdir(parents=True, exist_ok=True)
    shutil.copy(design, capture / f"{design.parent.name}__{design.name}")
    sys.exit(exit_code)
""")


class ScriptedInput:
    """Stands in for ``input``: returns queued answers and records prompts."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts = []

    def __call__(self, prompt=""):
        self.prompts.append(prompt)
        if not self.answers:
            raise EOFError
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException) or (
            isinstance(answer, type) and issubclass(answer, BaseException)
        ):
            raise answer
        return answer


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers installed by setup_logging during a test."""
    yield
    package_logger = logging.getLogger("featcraft")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def standard_image(temp_dir):
    """Write a small NIfTI image standing in for the MNI152 brain."""
    path = temp_dir / "MNI152_T1_2mm_brain.nii.gz"
    affine = np.eye(4)
    affine[0, 0] = 2  # 2mm voxels
    affine[1, 1] = 2
    affine[2, 2] = 2
    data = np.zeros((10, 12, 10), dtype=np.float32)
    data[3:7, 3:9, 3:7] = 100
    nib.save(nib.Nifti1Image(data, affine), path)
    return path


@pytest.fixture
def make_feat():
    """Return a builder for lower-level ``*.feat`` directories with N copes."""
    def _make(path, cope_count, extra=()):
        path = Path(path)
        stats = path / "stats"
        stats.mkdir(parents=True, exist_ok=True)
        for i in list(range(1, cope_count + 1)) + list(extra):
            (stats / f"cope{i}.nii.gz").touch()
            (stats / f"varcope{i}.nii.gz").touch()
        return path
    return _make


@pytest.fixture
def make_gfeat():
    """Return a builder for higher-level ``*.gfeat`` directories with N copes."""
    def _make(path, cope_count):
        path = Path(path)
        for i in range(1, cope_count + 1):
            stats = path / f"cope{i}.feat" / "stats"
            stats.mkdir(parents=True, exist_ok=True)
            (stats / "cope1.nii.gz").touch()
        return path
    return _make


@pytest.fixture
def project_dir(temp_dir, standard_image):
    """Project root with design templates and the standard image in place."""
    base = temp_dir / "project"
    write_default_templates(base / "code" / "design_files")
    target = base / "derivatives" / "templates" / standard_image.name
    target.parent.mkdir(parents=True)
    standard_image.rename(target)
    return base


@pytest.fixture
def make_level1(project_dir, make_feat):
    """
    Return a builder for a level-1 analysis.

    ``layout`` maps ``(subject, session)`` to the cope count of each run;
    an empty list creates the session with an empty ``func`` directory.
    """
    def _make(layout, analysis="analysis_main"):
        analysis_dir = project_dir / "derivatives" / "fsl" / "level-1" / analysis
        for (subject, session), counts in layout.items():
            func = analysis_dir / subject / session / "func"
            func.mkdir(parents=True, exist_ok=True)
            for run, count in enumerate(counts, start=1):
                make_feat(func / f"{subject}_{session}_task-rest_run-{run:02d}.feat", count)
        return analysis_dir
    return _make


@pytest.fixture
def make_level2(project_dir, make_gfeat):
    """
    Return a builder for a level-2 analysis.

    ``layout`` maps ``(subject, session)`` to the cope count of its ``.gfeat``.
    """
    def _make(layout, analysis="analysis_main"):
        analysis_dir = project_dir / "derivatives" / "fsl" / "level-2" / analysis
        for (subject, session), count in layout.items():
            make_gfeat(
                analysis_dir / subject / session / f"{subject}_{session}_desc-fixed-effects.gfeat",
                count,
            )
        return analysis_dir
    return _make


@pytest.fixture
def capture_dir(temp_dir):
    """Directory where the fake engine copies every design it is given."""
    return temp_dir / "captured"


@pytest.fixture
def fake_engine(temp_dir, capture_dir):
    """Return an engine command that records each design and exits with ``code``."""
    script = temp_dir / "fake_feat.py"
    script.write_text(FAKE_ENGINE)

    def _command(code=0):
        parts = [sys.executable, str(script), str(capture_dir)]
        if code:
            parts.append(str(code))
        return " ".join(shlex.quote(p) for p in parts)
    return _command


@pytest.fixture
def project_config(project_dir, fake_engine):
    """Configuration for ``project_dir`` using the fake engine."""
    return Config(base_dir=str(project_dir), engine={"command": fake_engine()})


@pytest.fixture
def scripted():
    """Return a factory for scripted ``input`` replacements."""
    return ScriptedInput
