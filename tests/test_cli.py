"""
test_cli.py - Command-line front-end
"""

import pytest

from pitmanmle.cli import main


class TestCli:
    """pitmanmle command."""

    def test_prints_report(self, capsys):
        main(["--classes", "1:50", "2:20", "3:5", "--population", "10000"])
        out = capsys.readouterr().out
        assert "Pitman Population Uniqueness Estimate" in out
        assert "Sample Size                 105" in out
        assert "Population Uniques" in out

    def test_sampling_fraction_and_iterative(self, capsys):
        main([
            "--classes", "1:50", "2:20", "3:5",
            "--sampling-fraction", "0.0105",
            "--formulation", "iterative",
        ])
        assert "iterative" in capsys.readouterr().out

    @pytest.mark.parametrize(
        "argv",
        [
            ["--classes", "1-50", "--population", "100"],
            ["--classes", "1:50"],
            ["--classes", "1:50", "--population", "10", "--sampling-fraction", "0.5"],
            ["--classes", "1:50", "--population", "10"],
            ["--classes", "1:1", "--population", "10"],
            ["--classes", "1:50", "--population", "100", "--accuracy", "0"],
        ],
    )
    def test_usage_errors(self, argv):
        with pytest.raises(SystemExit) as exc:
            main(argv)
        assert exc.value.code == 2
