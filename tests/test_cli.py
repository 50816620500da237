"""
Tests for the mapside CLI.
"""

from typer.testing import CliRunner

from mapside.cli import app

runner = CliRunner()


class TestCLI:
    """Test cases for CLI commands."""

    def test_version(self):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "mapside version" in result.stdout

    def test_join_prints_rows(self, customers_file, orders_file):
        result = runner.invoke(
            app,
            ["join", "--left", str(customers_file), "--right", str(orders_file)],
        )

        assert result.exit_code == 0
        lines = sorted(result.stdout.strip().splitlines())
        assert lines == [
            "111|John Doe|Corn flakes",
            "222|Jane Doe|Toilet paper",
            "222|Jane Doe|Toilet plunger",
            "333|Someone Else|Toilet brush",
        ]

    def test_join_writes_csv(self, tmp_path, customers_file, orders_file):
        output = tmp_path / "joined.csv"

        result = runner.invoke(
            app,
            [
                "join",
                "-l",
                str(customers_file),
                "-r",
                str(orders_file),
                "--workers",
                "2",
                "--output",
                str(output),
            ],
        )

        assert result.exit_code == 0
        assert "Wrote 4 joined rows" in result.stdout
        assert output.read_text().splitlines()[0] == "key,left,right"

    def test_join_local_environment_fails(self, customers_file, orders_file):
        """Test the single-process environment is rejected."""
        result = runner.invoke(
            app,
            [
                "join",
                "--left",
                str(customers_file),
                "--right",
                str(orders_file),
                "--local",
            ],
        )

        assert result.exit_code == 1
        assert "broadcast" in result.stdout

    def test_join_memory_limit(self, customers_file, orders_file):
        result = runner.invoke(
            app,
            [
                "join",
                "--left",
                str(customers_file),
                "--right",
                str(orders_file),
                "--memory-limit",
                "8",
            ],
        )

        assert result.exit_code == 1
        assert "Join failed" in result.stdout

    def test_join_missing_file(self, tmp_path, orders_file):
        result = runner.invoke(
            app,
            [
                "join",
                "--left",
                str(tmp_path / "nope.txt"),
                "--right",
                str(orders_file),
            ],
        )

        assert result.exit_code == 1
        assert "not found" in result.stdout
