"""Tests for the pipeline building blocks: prompts, logging and single designs."""

import logging
import re

import pytest

from featcraft.config import Config
from featcraft.core.design import FIXED_EFFECTS_DESIGN_NAME
from featcraft.pipeline import MixedEffectsPipeline, Prompter, generate_design, setup_logging


class TestPrompter:
    """Tests for Prompter."""

    def test_ask_default(self, scripted):
        """Test that an empty answer returns the default."""
        prompter = Prompter(scripted(["", "  memory "]))

        assert prompter.ask("Task: ", default="none") == "none"
        assert prompter.ask("Task: ", default="none") == "memory"

    def test_ask_float_retries(self, scripted):
        """Test that invalid numbers are asked again."""
        answers = scripted(["abc", "3.1", ""])
        prompter = Prompter(answers)

        assert prompter.ask_float("Z: ", 2.3) == 3.1
        assert prompter.ask_float("Z: ", 2.3) == 2.3
        assert len(answers.prompts) == 3

    def test_choose(self, scripted):
        """Test numbered choice with retries on invalid input."""
        answers = scripted(["0", "x", "4", "2"])
        prompter = Prompter(answers)

        assert prompter.choose(["a", "b", "c"]) == "b"
        assert len(answers.prompts) == 4

    def test_choose_nothing(self, scripted):
        """Test that an empty option list is an error."""
        with pytest.raises(ValueError):
            Prompter(scripted([])).choose([])

    def test_confirm(self, scripted):
        """Test that Enter confirms and 'n' cancels."""
        prompter = Prompter(scripted(["", "n", "No", "y"]))

        assert prompter.confirm("Go? ") is True
        assert prompter.confirm("Go? ") is False
        assert prompter.confirm("Go? ") is False
        assert prompter.confirm("Go? ") is True

    def test_confirm_end_of_input(self, scripted):
        """Test that end of input cancels."""
        assert Prompter(scripted([])).confirm("Go? ") is False

    def test_confirm_interrupt_propagates(self, scripted):
        """Test that Ctrl+C is left to the caller."""
        with pytest.raises(KeyboardInterrupt):
            Prompter(scripted([KeyboardInterrupt])).confirm("Go? ")

    def test_assume_yes(self, scripted):
        """Test that assume_yes confirms without asking."""
        answers = scripted([])

        assert Prompter(answers, assume_yes=True).confirm("Go? ") is True
        assert answers.prompts == []


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_log_file(self, temp_dir):
        """Test the timestamped log file and its contents."""
        log_file = setup_logging(temp_dir / "logs", "second_level_analysis", verbose=1)

        assert re.fullmatch(r"second_level_analysis_\d{8}_\d{6}\.log", log_file.name)
        logging.getLogger("featcraft.pipeline").debug("debug detail")
        logging.getLogger("featcraft.core.scanner").info("scanning")
        for handler in logging.getLogger("featcraft").handlers:
            handler.flush()

        text = log_file.read_text()
        assert "featcraft.core.scanner - INFO - scanning" in text
        assert "DEBUG - debug detail" in text

    def test_no_log_file(self):
        """Test console-only logging."""
        assert setup_logging(None) is None
        assert len(logging.getLogger("featcraft").handlers) == 1

    def test_repeated_calls_replace_handlers(self, temp_dir):
        """Test that handlers do not accumulate."""
        setup_logging(temp_dir, "a")
        setup_logging(temp_dir, "b", verbose=0)

        handlers = logging.getLogger("featcraft").handlers
        assert len(handlers) == 2
        assert handlers[0].level == logging.WARNING


class TestGenerateDesign:
    """Tests for non-interactive single design generation."""

    def test_reconciles_without_cope_count(self, project_config, make_level1, temp_dir):
        """Test that inputs are reconciled when no cope count is given."""
        analysis_dir = make_level1({("sub-01", "ses-01"): [3, 3, 2]})
        func = analysis_dir / "sub-01" / "ses-01" / "func"
        inputs = sorted(func.iterdir())

        design = generate_design(project_config, temp_dir / "out", inputs)
        text = design.output_path.read_text()

        assert design.output_path == temp_dir / "out" / FIXED_EFFECTS_DESIGN_NAME
        assert "set fmri(ncopeinputs) 3" in text
        assert "set fmri(multiple) 2" in text
        assert "run-03.feat" not in text
        assert "set fmri(z_thresh) 2.3" in text

    def test_explicit_values(self, project_config, make_level1, temp_dir):
        """Test explicit cope count and thresholds."""
        analysis_dir = make_level1({("sub-01", "ses-01"): [3, 2]})
        inputs = sorted((analysis_dir / "sub-01" / "ses-01" / "func").iterdir())

        design = generate_design(project_config, temp_dir / "out", inputs, cope_count=2, z_threshold=3.1,
                                 cluster_p_threshold=0.01)
        text = design.output_path.read_text()

        assert "set fmri(multiple) 2" in text
        assert "set fmri(ncopeinputs) 2" in text
        assert "set fmri(z_thresh) 3.1" in text
        assert "set fmri(prob_thresh) 0.01" in text

    def test_tie_is_an_error(self, project_config, make_level1, temp_dir):
        """Test that inputs without a majority cope count are rejected."""
        analysis_dir = make_level1({("sub-01", "ses-01"): [3, 2]})
        inputs = sorted((analysis_dir / "sub-01" / "ses-01" / "func").iterdir())

        with pytest.raises(ValueError, match="Unequal cope counts"):
            generate_design(project_config, temp_dir / "out", inputs)
        assert not (temp_dir / "out").exists()

    def test_missing_inputs(self, project_config, temp_dir):
        """Test that missing input directories are reported."""
        with pytest.raises(FileNotFoundError, match="Input directories not found"):
            generate_design(project_config, temp_dir / "out", [temp_dir / "run-01.feat"], cope_count=2)

    def test_missing_template(self, project_dir, temp_dir):
        """Test that a missing template fails before anything is written."""
        (project_dir / "code" / "design_files" / "fixed-effects_design.fsf").unlink()
        config = Config(base_dir=str(project_dir))

        with pytest.raises(FileNotFoundError, match="Design template not found"):
            generate_design(config, temp_dir / "out", [temp_dir], cope_count=1)
        assert not (temp_dir / "out").exists()


class TestOutputNames:
    """Tests for third-level output folder naming."""

    @pytest.mark.parametrize("task,descriptor,expected", [
        (None, None, "desc-group"),
        (None, "postICA", "desc-postICA_group"),
        ("memory", None, "task-memory_desc-group"),
        ("memory", "postICA", "task-memory_desc-postICA_group"),
    ])
    def test_output_dir(self, project_config, project_dir, task, descriptor, expected):
        pipeline = MixedEffectsPipeline(project_config)

        assert pipeline.output_dir(task, descriptor) == project_dir / "derivatives" / "fsl" / "level-3" / expected
