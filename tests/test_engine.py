"""Tests for running the external FEAT engine."""

import shlex
import sys
from pathlib import Path

import pytest

from featcraft.core.engine import ON_ERROR_CONTINUE, EngineError, FeatRunner
from featcraft.core.models import GeneratedConfig


@pytest.fixture
def design(temp_dir):
    path = temp_dir / "cope1_design.fsf"
    path.write_text("set fmri(multiple) 3\n")
    return GeneratedConfig(template_path=Path("template.fsf"), output_path=path, label="cope1")


def python_command(code):
    return [sys.executable, "-c", code]


class TestFeatRunner:
    """Tests for FeatRunner."""

    def test_success(self, design):
        """Test a zero exit status."""
        runner = FeatRunner(python_command("import sys"))

        assert runner.run(design) == 0

    def test_design_path_is_argument(self, design):
        """Test that the design path is passed as the last argument."""
        code = "import sys, pathlib; pathlib.Path(sys.argv[-1] + '.ran').write_text('ok')"
        FeatRunner(python_command(code)).run(design)

        assert Path(str(design.output_path) + ".ran").read_text() == "ok"

    def test_string_command(self, design):
        """Test that string commands are split like a shell would."""
        command = f"{shlex.quote(sys.executable)} -c 'import sys; sys.exit(0)'"
        runner = FeatRunner(command)

        assert runner.command[0] == sys.executable
        assert runner.run(design) == 0

    def test_failure_aborts(self, design):
        """Test that a non-zero exit raises under the abort policy."""
        runner = FeatRunner(python_command("import sys; sys.exit(3)"))

        with pytest.raises(EngineError, match="exited with status 3") as excinfo:
            runner.run(design)

        assert excinfo.value.returncode == 3

    def test_failure_continues(self, design, caplog):
        """Test that a non-zero exit is logged and returned under the continue policy."""
        runner = FeatRunner(python_command("import sys; sys.exit(2)"), on_error=ON_ERROR_CONTINUE)

        assert runner.run(design) == 2
        assert "continuing with the remaining designs" in caplog.text

    def test_missing_executable(self, design):
        """Test that an engine that cannot start is an error under any policy."""
        runner = FeatRunner("featcraft-no-such-engine", on_error=ON_ERROR_CONTINUE)

        assert not runner.is_available()
        with pytest.raises(EngineError, match="Could not start"):
            runner.run(design)

    def test_is_available(self):
        """Test engine lookup on PATH."""
        assert FeatRunner([sys.executable]).is_available()

    def test_invalid_policy(self):
        """Test that an unknown error policy is rejected."""
        with pytest.raises(ValueError, match="on_error"):
            FeatRunner("feat", on_error="retry")

    def test_empty_command(self):
        """Test that an empty command is rejected."""
        with pytest.raises(ValueError, match="empty"):
            FeatRunner("")
