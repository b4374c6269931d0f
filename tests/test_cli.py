"""Tests for the featcraft command-line interface."""

import pytest
import yaml

from featcraft.cli import _attach_selection_values, _build_overrides, create_parser, main
from featcraft.config import DEFAULT_CONFIG
from featcraft.core.design import FIXED_EFFECTS_DESIGN_NAME, FIXED_EFFECTS_TEMPLATE, MIXED_EFFECTS_TEMPLATE


class TestParser:
    """Tests for argument parsing."""

    def test_intermixed_inputs(self, temp_dir):
        """Test that options may follow the design inputs."""
        parser = create_parser()
        args = parser.parse_intermixed_args(
            [str(temp_dir), "design", "a.feat", "-o", "out", "b.feat", "--cope-count", "4"]
        )

        assert args.command == "design"
        assert [p.name for p in args.inputs] == ["a.feat", "b.feat"]
        assert args.cope_count == 4

    def test_selection_starting_with_exclusion(self, temp_dir):
        """Test that a selection value starting with '-' is not read as an option."""
        argv = _attach_selection_values(
            [str(temp_dir), "second-level", "--selection", "-sub-04", "-z", "3.1"]
        )
        args = create_parser().parse_intermixed_args(argv)

        assert args.selection == "-sub-04"
        assert args.z_threshold == 3.1

    def test_selection_empty_and_inline(self):
        """Test empty and already attached selection values."""
        assert _attach_selection_values(["--selection", ""]) == ["--selection="]
        assert _attach_selection_values(["--selection=-sub-01 -sub-02"]) == ["--selection=-sub-01 -sub-02"]
        assert _attach_selection_values(["--selection"]) == ["--selection"]

    def test_overrides_second_level(self, temp_dir):
        """Test that options land in the fixed-effects section."""
        args = create_parser().parse_intermixed_args([
            str(temp_dir), "second-level", "-z", "3.1", "--task", "rest",
            "--on-engine-error", "continue", "-vv",
        ])
        overrides = _build_overrides(args)

        assert overrides["base_dir"] == str(temp_dir.resolve())
        assert overrides["thresholds"] == {"z_threshold": 3.1}
        assert overrides["fixed_effects"] == {"task_name": "rest", "on_engine_error": "continue"}
        assert overrides["verbose"] == 3
        assert "mixed_effects" not in overrides

    def test_overrides_third_level(self, temp_dir):
        """Test that options land in the mixed-effects section."""
        template = temp_dir / "group.fsf"
        args = create_parser().parse_intermixed_args([
            "third-level", "--task", "memory", "--desc", "postICA", "--template", str(template),
        ])
        overrides = _build_overrides(args)

        assert overrides["mixed_effects"] == {"task_name": "memory", "descriptor": "postICA"}
        assert overrides["templates"] == {"mixed_effects": str(template.resolve())}
        assert "base_dir" not in overrides


class TestMain:
    """Tests for the main entry point."""

    def test_init_config(self, temp_dir, capsys):
        """Test writing a default configuration file."""
        main(["--init-config", str(temp_dir / "featcraft")])

        path = temp_dir / "featcraft.yaml"
        assert path.exists()
        with open(path) as f:
            assert yaml.safe_load(f) == DEFAULT_CONFIG
        assert "Configuration file created" in capsys.readouterr().out

    def test_init_templates(self, temp_dir):
        """Test writing the default design templates."""
        main(["--init-templates", str(temp_dir / "design_files")])

        assert (temp_dir / "design_files" / FIXED_EFFECTS_TEMPLATE).is_file()
        assert (temp_dir / "design_files" / MIXED_EFFECTS_TEMPLATE).is_file()

    def test_missing_command(self, project_dir):
        """Test that a command is required."""
        with pytest.raises(SystemExit) as excinfo:
            main([str(project_dir)])
        assert excinfo.value.code == 2

    def test_missing_base_dir(self, temp_dir, capsys):
        """Test that an absent project root is reported."""
        with pytest.raises(SystemExit) as excinfo:
            main([str(temp_dir / "nowhere"), "second-level", "--no-log-file"])

        assert excinfo.value.code == 1
        assert "Base directory not found" in capsys.readouterr().err

    def test_invalid_threshold(self, project_dir, capsys):
        """Test that invalid options are reported as configuration errors."""
        with pytest.raises(SystemExit) as excinfo:
            main([str(project_dir), "second-level", "-p", "1.5", "--no-log-file"])

        assert excinfo.value.code == 1
        assert "cluster_p_threshold must be between 0 and 1" in capsys.readouterr().err

    def test_design(self, project_dir, make_level1, temp_dir):
        """Test the single design command."""
        analysis_dir = make_level1({("sub-01", "ses-01"): [4, 4]})
        func = analysis_dir / "sub-01" / "ses-01" / "func"
        output = temp_dir / "sub-01_ses-01_desc-fixed-effects"

        main([
            str(project_dir), "design", "-o", str(output), "--cope-count", "4", "--no-log-file",
            str(func / "sub-01_ses-01_task-rest_run-01.feat"),
            str(func / "sub-01_ses-01_task-rest_run-02.feat"),
        ])

        text = (output / FIXED_EFFECTS_DESIGN_NAME).read_text()
        assert "set fmri(multiple) 2" in text
        assert "set fmri(ncopeinputs) 4" in text

    def test_design_requires_output(self, project_dir):
        """Test that the design command needs an output path."""
        with pytest.raises(SystemExit) as excinfo:
            main([str(project_dir), "design", "--no-log-file", "run-01.feat"])
        assert excinfo.value.code == 2

    def test_second_level(self, project_dir, make_level1, fake_engine, capture_dir, capsys):
        """Test a second-level run driven entirely by options."""
        analysis_dir = make_level1({
            ("sub-01", "ses-01"): [3, 3],
            ("sub-02", "ses-01"): [3, 3, 3],
        })

        main([
            str(project_dir), "second-level",
            "--analysis-dir", str(analysis_dir),
            "--selection", "-sub-02",
            "--task", "rest",
            "-z", "3.1", "-p", "0.01",
            "--engine-command", fake_engine(),
            "--yes",
        ])

        assert [p.name for p in capture_dir.iterdir()] == [
            f"sub-01_ses-01_task-rest_desc-fixed-effects__{FIXED_EFFECTS_DESIGN_NAME}"
        ]
        out = capsys.readouterr().out
        assert "Designs run: 1" in out
        assert "Skipped: sub-02:ses-01" in out
        assert len(list((project_dir / "code" / "logs").glob("second_level_analysis_*.log"))) == 1

    def test_pipeline_failure(self, project_dir, fake_engine, capsys):
        """Test that pipeline errors exit with status 1."""
        with pytest.raises(SystemExit) as excinfo:
            main([str(project_dir), "third-level", "--no-log-file", "--engine-command", fake_engine()])

        assert excinfo.value.code == 1
        assert "No available directories for higher-level analysis" in capsys.readouterr().err
